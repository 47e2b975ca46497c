#!/usr/bin/env python3
"""
UVM Assembler

Usage: python -m uvm.assembler <infile> [outfile=<infile>.bin] [--image]

Assembly language syntax:
    // comment
    label:
    .sublabel:
    MNEMONIC operands

Operands (whitespace separated):
    r0-r255     Registers
    42, -42     Literals (signed 64-bit)
    label       Label reference
    .sublabel   Sublabel of the enclosing label
    label.sub   Fully qualified sublabel reference

Instructions:
    Data:       SET, PUSH, PUSHL, POP, PUSHRF, POPRF
    Arithmetic: ADD, ADDL, SUB, SUBLA, SUBLB, MUL, MULL,
                DIV, DIVLA, DIVLB, MOD, INC, DEC
    Compare:    CMP, CMPL
    Control:    JMP, JEQ, JNE, JLT, JLE, JGT, JGE, CALL, RET, HALT
    Debug:      DBGREG, DBGREGS

How the two-pass algorithm works:
  Pass 1: Tokenize every line, assign each instruction its byte offset and
          record every label at the offset of the instruction that follows.
  Pass 2: Check operands against the instruction table, replace label
          references with absolute offsets and encode.
"""

import os
import re
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .executable import (
    Instruction, Kind, MNEMONICS, Program, SIGNATURES,
    LITERAL_MIN, LITERAL_MAX, REGISTER_MAX,
    instruction_size, pack_image, serialize,
)

COMMENT = '//'
IDENT = r'[A-Za-z_][A-Za-z0-9_]*'

LABEL_RE = re.compile(rf'^(\.?)({IDENT})$')
REGISTER_RE = re.compile(r'^[rR](\d+)$')
LITERAL_RE = re.compile(r'^-?\d+$')
REFERENCE_RE = re.compile(rf'^(?:{IDENT}(?:\.{IDENT})?|\.{IDENT})$')


class AssemblerError(Exception):
    """Assembler error with line information."""
    def __init__(self, message: str, line_num: int = 0, line: str = ""):
        self.message = message
        self.line_num = line_num
        self.line = line
        text = f"Line {line_num}: {message}"
        if line:
            text += f"\n  {line.strip()}"
        super().__init__(text)


class UnknownMnemonic(AssemblerError):
    pass


class BadOperandArity(AssemblerError):
    pass


class BadOperandKind(AssemblerError):
    pass


class UnresolvedLabel(AssemblerError):
    pass


class DuplicateLabel(AssemblerError):
    pass


class MalformedLabel(AssemblerError):
    pass


LABEL = 'label'
SUBLABEL = 'sublabel'
INSTRUCTION = 'instruction'


@dataclass
class Token:
    """One meaningful source line."""
    kind: str
    name: str
    line_num: int
    line: str
    operands: List[str] = field(default_factory=list)


def strip_comment(line: str) -> str:
    if COMMENT in line:
        line = line[:line.index(COMMENT)]
    return line.strip()


def tokenize_line(line: str, line_num: int = 0) -> Optional[Token]:
    """Split one source line into a label definition or mnemonic + operands."""
    text = strip_comment(line)
    if not text:
        return None

    if text.endswith(':'):
        match = LABEL_RE.match(text[:-1].strip())
        if not match:
            raise MalformedLabel(f"Invalid label definition: {text}", line_num, line)
        sub, name = match.groups()
        return Token(SUBLABEL if sub else LABEL, name, line_num, line)

    parts = text.split()
    return Token(INSTRUCTION, parts[0].upper(), line_num, line, parts[1:])


def tokenize(source: str) -> List[Token]:
    tokens = []
    for i, line in enumerate(source.splitlines(), 1):
        token = tokenize_line(line, i)
        if token is not None:
            tokens.append(token)
    return tokens


def describe_operand(token: str) -> str:
    """Name the kind a source operand looks like, for error messages."""
    if REGISTER_RE.match(token):
        return f"register {token}"
    if LITERAL_RE.match(token):
        return f"literal {token}"
    if REFERENCE_RE.match(token):
        return f"label {token}"
    return f"'{token}'"


class Assembler:
    """UVM Assembler."""

    def __init__(self):
        self.labels: Dict[str, int] = {}
        self.label_lines: Dict[str, int] = {}
        # (instruction token, enclosing top-level label)
        self.pending: List[Tuple[Token, Optional[str]]] = []
        self.scope: Optional[str] = None
        self.offset = 0
        self.line_num = 0
        self.current_line = ""

    def error(self, cls, message: str):
        """Raise an assembler error for the current line."""
        raise cls(message, self.line_num, self.current_line)

    def enter(self, token: Token):
        self.line_num = token.line_num
        self.current_line = token.line

    def define_label(self, name: str):
        if name in self.labels:
            self.error(DuplicateLabel, f"Duplicate label: {name} (first defined on line {self.label_lines[name]})")
        self.labels[name] = self.offset
        self.label_lines[name] = self.line_num

    def first_pass(self, tokens: List[Token]):
        """Assign byte offsets and build the label table."""
        for token in tokens:
            self.enter(token)

            if token.kind == LABEL:
                self.scope = token.name
                self.define_label(token.name)

            elif token.kind == SUBLABEL:
                if self.scope is None:
                    self.error(MalformedLabel, f"Sublabel .{token.name} has no enclosing label")
                self.define_label(f"{self.scope}.{token.name}")

            else:
                opcode = MNEMONICS.get(token.name)
                if opcode is None:
                    self.error(UnknownMnemonic, f"Unknown instruction: {token.name}")
                self.pending.append((token, self.scope))
                self.offset += instruction_size(opcode)

    def qualify(self, name: str, scope: Optional[str]) -> str:
        if name.startswith('.'):
            if scope is None:
                self.error(UnresolvedLabel, f"Sublabel reference {name} outside of any label")
            return scope + name
        return name

    def parse_register(self, token: str) -> int:
        match = REGISTER_RE.match(token)
        if not match:
            self.error(BadOperandKind, f"Expected a register, got {describe_operand(token)}")
        index = int(match.group(1))
        if index > REGISTER_MAX:
            self.error(BadOperandKind, f"Register index out of range: {token}")
        return index

    def parse_literal(self, token: str) -> int:
        if not LITERAL_RE.match(token):
            self.error(BadOperandKind, f"Expected a literal, got {describe_operand(token)}")
        value = int(token)
        if not LITERAL_MIN <= value <= LITERAL_MAX:
            self.error(BadOperandKind, f"Literal out of 64-bit range: {token}")
        return value

    def parse_address(self, token: str, scope: Optional[str]) -> int:
        if not REFERENCE_RE.match(token):
            self.error(BadOperandKind, f"Expected a label, got {describe_operand(token)}")
        name = self.qualify(token, scope)
        if name not in self.labels:
            self.error(UnresolvedLabel, f"Undefined label: {name}")
        return self.labels[name]

    def build_instruction(self, token: Token, scope: Optional[str]) -> Instruction:
        """Check operands against the instruction table and resolve labels."""
        opcode = MNEMONICS[token.name]
        signature = SIGNATURES[opcode]

        if len(token.operands) != len(signature):
            expected = ' '.join(kind.value for kind in signature) or 'no operands'
            self.error(
                BadOperandArity,
                f"{opcode.name} takes {len(signature)} operand(s) ({expected}), got {len(token.operands)}",
            )

        values = []
        for kind, operand in zip(signature, token.operands):
            if kind is Kind.REGISTER:
                values.append(self.parse_register(operand))
            elif kind is Kind.LITERAL:
                values.append(self.parse_literal(operand))
            else:
                values.append(self.parse_address(operand, scope))

        return Instruction(opcode, tuple(values))

    def second_pass(self) -> bytes:
        """Resolve label references and encode."""
        code = bytearray()
        for token, scope in self.pending:
            self.enter(token)
            code += self.build_instruction(token, scope).encode()
        return bytes(code)

    def assemble(self, source: str) -> Program:
        """Assemble source code into a program."""
        self.labels = {}
        self.label_lines = {}
        self.pending = []
        self.scope = None
        self.offset = 0

        self.first_pass(tokenize(source))
        return Program(self.second_pass())


def assemble(source: str) -> Program:
    """Assemble source text into a program."""
    return Assembler().assemble(source)


def main():
    import argparse

    parser = argparse.ArgumentParser(description='UVM Assembler')
    parser.add_argument('infile', help='Input assembly file')
    parser.add_argument('outfile', nargs='?', default=None, help='Output binary file')
    parser.add_argument('--image', action='store_true', help='Write a compressed program image')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--dump-labels', action='store_true', help='Print label offsets after assembly')

    args = parser.parse_args()

    # Read source file
    try:
        with open(args.infile, 'r') as f:
            source = f.read()
    except FileNotFoundError:
        print(f"Error: File not found: {args.infile}", file=sys.stderr)
        sys.exit(1)

    # Assemble
    assembler = Assembler()
    try:
        program = assembler.assemble(source)
    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.verbose:
        print(f"Assembled {len(assembler.pending)} instructions ({len(program)} bytes)")
        print(f"Labels: {assembler.labels}")

    if args.dump_labels:
        for name, addr in sorted(assembler.labels.items(), key=lambda kv: kv[1]):
            print(f"{name}: 0x{addr:04X}")

    if not args.outfile:
        args.outfile = os.path.splitext(args.infile)[0] + '.bin'

    data = pack_image(program) if args.image else serialize(program)

    # Write output
    try:
        with open(args.outfile, 'wb') as f:
            f.write(data)
        print(f"Output written to {args.outfile}")
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
