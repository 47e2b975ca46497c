#!/usr/bin/env python3
"""
UVM

Usage: python -m uvm.vm <program> [--trace] [--step] [--debug] [--batched-output]

<program> is assembly source (.uvm, .asm), a raw program or a packed image.

Machine state:
  Registers:   register_count signed 64-bit registers, all start at 0
  Data stack:  up to stack_capacity 64-bit values
  Call stack:  up to call_stack_capacity return addresses
  Flag:        LESS / EQUAL / GREATER, written only by CMP and CMPL,
               starts as EQUAL
  IP:          byte offset of the next instruction, starts at 0

Arithmetic wraps at 64 bits. Division truncates toward zero and the
remainder takes the sign of the dividend.

Faults stop the run and carry the IP of the faulting instruction:
  StackOverflow       PUSH/PUSHL/PUSHRF onto a full data stack
  StackUnderflow      POP/POPRF from a data stack that is too shallow
  CallStackOverflow   CALL with a full call stack
  CallStackUnderflow  RET with an empty call stack
  DivisionByZero      DIV/DIVLA/DIVLB/MOD with a zero divisor
  InvalidRegister     register index (or PUSHRF/POPRF count) past register_count
  IpOutOfBounds       IP outside the program, or instruction cut off by its end
  UnknownOpcodeFault  byte at IP is not an opcode
"""

import sys
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional, Tuple

from .executable import (
    Instruction, Kind, Opcode, Program, REGISTER_MAX,
    DecodeError, TruncatedBuffer, UnknownOpcode,
    disassemble, load_program,
)

DEFAULT_REGISTERS = 16
DEFAULT_STACK_SIZE = 256
DEFAULT_CALL_STACK_SIZE = 256

MASK_64 = (1 << 64) - 1
SIGN_64 = 1 << 63


def wrap(value: int) -> int:
    """Wrap an integer to signed 64-bit two's complement."""
    value &= MASK_64
    return value - (1 << 64) if value & SIGN_64 else value


def trunc_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


def trunc_mod(a: int, b: int) -> int:
    return a - b * trunc_div(a, b)


class Flag(IntEnum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


class Status(Enum):
    RUNNING = 'running'
    HALTED = 'halted'
    FAULTED = 'faulted'


class VMFault(Exception):
    """Runtime fault, with the instruction pointer at the time of the fault."""
    def __init__(self, message: str, ip: int = 0):
        self.message = message
        self.ip = ip
        super().__init__(f"IP 0x{ip:04X}: {message}")


class StackOverflow(VMFault):
    pass


class StackUnderflow(VMFault):
    pass


class CallStackOverflow(VMFault):
    pass


class CallStackUnderflow(VMFault):
    pass


class DivisionByZero(VMFault):
    pass


class InvalidRegister(VMFault):
    pass


class IpOutOfBounds(VMFault):
    pass


class UnknownOpcodeFault(VMFault):
    pass


@dataclass
class Config:
    """Machine parameters for one run."""
    register_count: int = DEFAULT_REGISTERS
    stack_capacity: int = DEFAULT_STACK_SIZE
    call_stack_capacity: int = DEFAULT_CALL_STACK_SIZE
    # Receives one line of text per DBGREG/DBGREGS; None prints to stdout
    output_sink: Optional[Callable[[str], None]] = None

    def __post_init__(self):
        if not 1 <= self.register_count <= REGISTER_MAX + 1:
            raise ValueError(f"register_count must be 1-{REGISTER_MAX + 1}, got {self.register_count}")
        if self.stack_capacity < 0:
            raise ValueError(f"stack_capacity must not be negative, got {self.stack_capacity}")
        if self.call_stack_capacity < 0:
            raise ValueError(f"call_stack_capacity must not be negative, got {self.call_stack_capacity}")


@dataclass(frozen=True)
class FinalState:
    """Snapshot of the machine when a run stops."""
    registers: Tuple[int, ...]
    stack: Tuple[int, ...]
    call_stack: Tuple[int, ...]
    flag: Flag
    ip: int
    cycles: int
    status: Status


class VM:
    """UVM."""

    def __init__(self, program: Program, config: Optional[Config] = None):
        self.program = program
        self.config = config if config is not None else Config()
        self.code = program.code

        # Decoded instruction cache, keyed by byte offset
        self.code_map: Dict[int, Instruction] = {}

        self.regs = [0] * self.config.register_count
        self.stack: List[int] = []
        self.call_stack: List[int] = []
        self.flag = Flag.EQUAL
        self.ip = 0

        self.status = Status.RUNNING
        self.cycles = 0

        # Print state before every instruction
        self.trace = False
        # Print state and wait for ENTER before every instruction
        self.step_by_step = False

        self.operations = {
            Opcode.HALT:    self.op_halt,
            Opcode.SET:     self.op_set,
            Opcode.PUSH:    self.op_push,
            Opcode.PUSHL:   self.op_pushl,
            Opcode.POP:     self.op_pop,
            Opcode.PUSHRF:  self.op_pushrf,
            Opcode.POPRF:   self.op_poprf,
            Opcode.ADD:     self.op_add,
            Opcode.ADDL:    self.op_addl,
            Opcode.SUB:     self.op_sub,
            Opcode.SUBLA:   self.op_subla,
            Opcode.SUBLB:   self.op_sublb,
            Opcode.MUL:     self.op_mul,
            Opcode.MULL:    self.op_mull,
            Opcode.DIV:     self.op_div,
            Opcode.DIVLA:   self.op_divla,
            Opcode.DIVLB:   self.op_divlb,
            Opcode.MOD:     self.op_mod,
            Opcode.INC:     self.op_inc,
            Opcode.DEC:     self.op_dec,
            Opcode.CMP:     self.op_cmp,
            Opcode.CMPL:    self.op_cmpl,
            Opcode.JMP:     self.op_jmp,
            Opcode.JEQ:     self.jump_if(Flag.EQUAL),
            Opcode.JNE:     self.jump_if(Flag.LESS, Flag.GREATER),
            Opcode.JLT:     self.jump_if(Flag.LESS),
            Opcode.JLE:     self.jump_if(Flag.LESS, Flag.EQUAL),
            Opcode.JGT:     self.jump_if(Flag.GREATER),
            Opcode.JGE:     self.jump_if(Flag.GREATER, Flag.EQUAL),
            Opcode.CALL:    self.op_call,
            Opcode.RET:     self.op_ret,
            Opcode.DBGREG:  self.op_dbgreg,
            Opcode.DBGREGS: self.op_dbgregs,
        }

    def fault(self, cls, message: str) -> VMFault:
        """Mark the run as faulted and build the fault to raise."""
        self.status = Status.FAULTED
        return cls(message, self.ip)

    def output(self, text: str):
        sink = self.config.output_sink
        if sink is None:
            print(text)
        else:
            sink(text)

    def fetch(self) -> Tuple[Instruction, int]:
        """Fetch the instruction at IP. Returns (Instruction, size_in_bytes)."""
        if not 0 <= self.ip < len(self.code):
            raise self.fault(IpOutOfBounds, f"IP outside program of {len(self.code)} bytes")

        op = self.code_map.get(self.ip)
        if op is None:
            try:
                op = Instruction.decode(self.code, self.ip)
            except UnknownOpcode as e:
                raise self.fault(UnknownOpcodeFault, e.message) from e
            except TruncatedBuffer as e:
                raise self.fault(IpOutOfBounds, e.message) from e
            self.code_map[self.ip] = op

        return op, op.size()

    def check_registers(self, op: Instruction):
        for kind, value in zip(op.signature, op.operands):
            if kind is Kind.REGISTER and value >= len(self.regs):
                raise self.fault(InvalidRegister, f"Register r{value} out of bounds (>{len(self.regs) - 1})")

    def step(self) -> bool:
        """Execute one instruction. Returns False once the run has stopped."""
        if self.status is not Status.RUNNING:
            return False

        op, inst_size = self.fetch()
        self.check_registers(op)

        if self.trace or self.step_by_step:
            self.print_state(op)
        if self.step_by_step:
            input("Press ENTER to continue...")

        # Handlers return True when they have set IP themselves
        if not self.operations[op.opcode](op, inst_size):
            self.ip += inst_size
        self.cycles += 1

        return self.status is Status.RUNNING

    def run(self, max_cycles: Optional[int] = None) -> FinalState:
        """Run until HALT, a fault, or max_cycles instructions (if given)."""
        while self.step():
            if max_cycles is not None and self.cycles >= max_cycles:
                break
        return self.state()

    def state(self) -> FinalState:
        return FinalState(
            registers=tuple(self.regs),
            stack=tuple(self.stack),
            call_stack=tuple(self.call_stack),
            flag=self.flag,
            ip=self.ip,
            cycles=self.cycles,
            status=self.status,
        )

    # Data movement

    def op_halt(self, op, size):
        self.status = Status.HALTED
        return False

    def op_set(self, op, size):
        value, rb = op.operands
        self.regs[rb] = value
        return False

    def push(self, value: int):
        if len(self.stack) >= self.config.stack_capacity:
            raise self.fault(StackOverflow, f"Stack overflow ({self.config.stack_capacity} values)")
        self.stack.append(value)

    def pop(self) -> int:
        if not self.stack:
            raise self.fault(StackUnderflow, "Stack underflow")
        return self.stack.pop()

    def op_push(self, op, size):
        self.push(self.regs[op.operands[0]])
        return False

    def op_pushl(self, op, size):
        self.push(op.operands[0])
        return False

    def op_pop(self, op, size):
        self.regs[op.operands[0]] = self.pop()
        return False

    def frame_size(self, op: Instruction) -> int:
        count = op.operands[0]
        if not 0 <= count <= len(self.regs):
            raise self.fault(
                InvalidRegister,
                f"{op.opcode.name} register frame size {count} out of bounds (0-{len(self.regs)})",
            )
        return count

    def op_pushrf(self, op, size):
        count = self.frame_size(op)
        if len(self.stack) + count > self.config.stack_capacity:
            raise self.fault(StackOverflow, f"PUSHRF {count}: stack overflow")
        # r0 first, so r(count-1) ends on top
        self.stack.extend(self.regs[:count])
        return False

    def op_poprf(self, op, size):
        count = self.frame_size(op)
        if len(self.stack) < count:
            raise self.fault(StackUnderflow, f"POPRF {count}: stack underflow")
        for reg in reversed(range(count)):
            self.regs[reg] = self.stack.pop()
        return False

    # Arithmetic

    def op_add(self, op, size):
        ra, rb = op.operands
        self.regs[rb] = wrap(self.regs[rb] + self.regs[ra])
        return False

    def op_addl(self, op, size):
        value, rb = op.operands
        self.regs[rb] = wrap(self.regs[rb] + value)
        return False

    def op_sub(self, op, size):
        ra, rb = op.operands
        self.regs[rb] = wrap(self.regs[rb] - self.regs[ra])
        return False

    def op_subla(self, op, size):
        value, rb = op.operands
        self.regs[rb] = wrap(self.regs[rb] - value)
        return False

    def op_sublb(self, op, size):
        value, rb = op.operands
        self.regs[rb] = wrap(value - self.regs[rb])
        return False

    def op_mul(self, op, size):
        ra, rb = op.operands
        self.regs[rb] = wrap(self.regs[rb] * self.regs[ra])
        return False

    def op_mull(self, op, size):
        value, rb = op.operands
        self.regs[rb] = wrap(self.regs[rb] * value)
        return False

    def divide(self, op: Instruction, dividend: int, divisor: int) -> int:
        if divisor == 0:
            raise self.fault(DivisionByZero, f"{op.opcode.name}: division by zero")
        return wrap(trunc_div(dividend, divisor))

    def op_div(self, op, size):
        ra, rb = op.operands
        self.regs[rb] = self.divide(op, self.regs[rb], self.regs[ra])
        return False

    def op_divla(self, op, size):
        value, rb = op.operands
        self.regs[rb] = self.divide(op, self.regs[rb], value)
        return False

    def op_divlb(self, op, size):
        value, rb = op.operands
        self.regs[rb] = self.divide(op, value, self.regs[rb])
        return False

    def op_mod(self, op, size):
        ra, rb = op.operands
        if self.regs[ra] == 0:
            raise self.fault(DivisionByZero, "MOD: division by zero")
        self.regs[rb] = wrap(trunc_mod(self.regs[rb], self.regs[ra]))
        return False

    def op_inc(self, op, size):
        rb = op.operands[0]
        self.regs[rb] = wrap(self.regs[rb] + 1)
        return False

    def op_dec(self, op, size):
        rb = op.operands[0]
        self.regs[rb] = wrap(self.regs[rb] - 1)
        return False

    # Comparison and control flow

    def compare(self, a: int, b: int):
        if a < b:
            self.flag = Flag.LESS
        elif a > b:
            self.flag = Flag.GREATER
        else:
            self.flag = Flag.EQUAL

    def op_cmp(self, op, size):
        ra, rb = op.operands
        self.compare(self.regs[rb], self.regs[ra])
        return False

    def op_cmpl(self, op, size):
        value, rb = op.operands
        self.compare(self.regs[rb], value)
        return False

    def op_jmp(self, op, size):
        self.ip = op.operands[0]
        return True

    def jump_if(self, *flags: Flag):
        """Build a conditional jump handler taken when the flag is one of `flags`."""
        def handler(op, size):
            if self.flag in flags:
                self.ip = op.operands[0]
                return True
            return False
        return handler

    def op_call(self, op, size):
        if len(self.call_stack) >= self.config.call_stack_capacity:
            raise self.fault(CallStackOverflow, f"Call stack overflow ({self.config.call_stack_capacity} frames)")
        self.call_stack.append(self.ip + size)
        self.ip = op.operands[0]
        return True

    def op_ret(self, op, size):
        if not self.call_stack:
            raise self.fault(CallStackUnderflow, "RET with empty call stack")
        self.ip = self.call_stack.pop()
        return True

    # Debug output

    def op_dbgreg(self, op, size):
        rb = op.operands[0]
        self.output(f"r{rb} = {self.regs[rb]}")
        return False

    def op_dbgregs(self, op, size):
        self.output(f"regs = {self.regs}")
        return False

    def print_state(self, op: Optional[Instruction] = None):
        """Print current VM state."""
        regs_str = ' '.join(f"r{i}={value}" for i, value in enumerate(self.regs))

        print(f"[{self.cycles:06d}] IP={self.ip:04X} {regs_str} CMP={self.flag.name} SP={len(self.stack)} CSP={len(self.call_stack)}")
        if op:
            print(f"         {op}")


def run(program: Program, config: Optional[Config] = None) -> FinalState:
    """Run program to completion on a fresh machine."""
    return VM(program, config).run()


def main():
    import argparse
    from .assembler import AssemblerError, assemble

    parser = argparse.ArgumentParser(description='UVM')
    parser.add_argument('--debug', '-d', action='store_true', help='Enable debug mode')
    parser.add_argument('--trace', '-t', action='store_true', help='Trace execution')
    parser.add_argument('--step', '-s', action='store_true', help='Pause before every instruction')
    parser.add_argument('--max-cycles', '-m', type=int, default=None, help='Maximum cycles')
    parser.add_argument('--disasm', action='store_true', help='Disassemble and exit')
    parser.add_argument('--batched-output', '-b', action='store_true',
                        help='Print program output only at the end of execution')
    parser.add_argument('--registers', type=int, default=DEFAULT_REGISTERS, help='Number of registers')
    parser.add_argument('--stack-size', type=int, default=DEFAULT_STACK_SIZE, help='Data stack capacity')
    parser.add_argument('--call-stack-size', type=int, default=DEFAULT_CALL_STACK_SIZE, help='Call stack capacity')
    parser.add_argument('program', help='Assembly source, program or image file')

    args = parser.parse_args()

    # Load program
    try:
        if args.program.endswith(('.uvm', '.asm')):
            with open(args.program, 'r') as f:
                program = assemble(f.read())
        else:
            with open(args.program, 'rb') as f:
                program = load_program(f.read())

    except FileNotFoundError:
        print(f"Error: Program not found: {args.program}", file=sys.stderr)
        sys.exit(1)

    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    except DecodeError as e:
        print(f"Error loading program: {e}", file=sys.stderr)
        sys.exit(1)

    if args.disasm:
        print(disassemble(program))
        sys.exit(0)

    captured: List[str] = []
    try:
        config = Config(
            register_count=args.registers,
            stack_capacity=args.stack_size,
            call_stack_capacity=args.call_stack_size,
            output_sink=captured.append if args.batched_output else None,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    # Create and configure VM
    vm = VM(program, config)
    vm.trace = args.trace
    vm.step_by_step = args.step

    if args.debug:
        print(f"Loaded program: {len(program)} bytes")
        vm.print_state()

    # Run
    try:
        state = vm.run(args.max_cycles)
    except VMFault as e:
        if captured:
            print('\n'.join(captured))
        print(f"Fault: {e}", file=sys.stderr)
        sys.exit(1)

    if captured:
        print('\n'.join(captured))

    if state.status is Status.RUNNING:
        print(f"Warning: Execution stopped after {state.cycles} cycles", file=sys.stderr)

    if args.debug:
        print(f"\nExecution finished after {vm.cycles} cycles")
        vm.print_state()


if __name__ == '__main__':
    main()
