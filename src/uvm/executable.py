"""
Executable encoding/decoding library for UVM.

Instruction Format (variable length, little-endian):
  Byte 0:     Opcode
  Bytes 1-:   Operands, in the order the opcode declares them
                Register   1 byte    register index (0-255)
                Literal    8 bytes   signed 64-bit integer
                Address    8 bytes   unsigned 64-bit byte offset into the program

A program is its instructions laid back to back, with no header, length
prefix or padding. Instruction boundaries are only recoverable by decoding
from a known instruction offset (0, or an address taken from the program).

Image Format (container used for program files):
  Bytes 0-3:  MAGIC
  Bytes 4-5:  VERSION
  Bytes 6-9:  Length of the program in bytes (uncompressed)
  Bytes 10-:  zstd frame holding the program
"""

from zstd import compress, decompress, Error as ZstdError
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Iterable, Iterator, Tuple
import struct

# Magic bytes for the image container
MAGIC = b'UVMI'
VERSION = 1
IMAGE_HEADER = struct.Struct('<4sHI')

LITERAL_MIN = -(1 << 63)
LITERAL_MAX = (1 << 63) - 1
ADDRESS_MAX = (1 << 64) - 1
REGISTER_MAX = 0xFF


class Opcode(IntEnum):
    HALT = 0
    SET = 1
    PUSH = 2
    PUSHL = 3
    POP = 4
    PUSHRF = 5
    POPRF = 6
    ADD = 7
    ADDL = 8
    SUB = 9
    SUBLA = 10
    SUBLB = 11
    MUL = 12
    MULL = 13
    DIV = 14
    DIVLA = 15
    DIVLB = 16
    MOD = 17
    INC = 18
    DEC = 19
    CMP = 20
    CMPL = 21
    JMP = 22
    JEQ = 23
    JLT = 24
    JLE = 25
    JGT = 26
    JGE = 27
    JNE = 28
    CALL = 29
    RET = 30
    DBGREG = 31
    DBGREGS = 32


class Kind(Enum):
    """Operand kinds."""
    REGISTER = 'Register'
    LITERAL = 'Literal'
    ADDRESS = 'Address'


KIND_FORMATS = {
    Kind.REGISTER: struct.Struct('<B'),
    Kind.LITERAL:  struct.Struct('<q'),
    Kind.ADDRESS:  struct.Struct('<Q'),
}

KIND_RANGES = {
    Kind.REGISTER: (0, REGISTER_MAX),
    Kind.LITERAL:  (LITERAL_MIN, LITERAL_MAX),
    Kind.ADDRESS:  (0, ADDRESS_MAX),
}

# Operand signatures
NIL = ()
REG = (Kind.REGISTER,)
LIT = (Kind.LITERAL,)
LIT_REG = (Kind.LITERAL, Kind.REGISTER)
REG_REG = (Kind.REGISTER, Kind.REGISTER)
ADDR = (Kind.ADDRESS,)

# The one table both the assembler and the decoder read operand layouts from.
SIGNATURES: Dict[Opcode, Tuple[Kind, ...]] = {
    Opcode.HALT:    NIL,
    Opcode.SET:     LIT_REG,
    Opcode.PUSH:    REG,
    Opcode.PUSHL:   LIT,
    Opcode.POP:     REG,
    Opcode.PUSHRF:  LIT,
    Opcode.POPRF:   LIT,
    Opcode.ADD:     REG_REG,
    Opcode.ADDL:    LIT_REG,
    Opcode.SUB:     REG_REG,
    Opcode.SUBLA:   LIT_REG,
    Opcode.SUBLB:   LIT_REG,
    Opcode.MUL:     REG_REG,
    Opcode.MULL:    LIT_REG,
    Opcode.DIV:     REG_REG,
    Opcode.DIVLA:   LIT_REG,
    Opcode.DIVLB:   LIT_REG,
    Opcode.MOD:     REG_REG,
    Opcode.INC:     REG,
    Opcode.DEC:     REG,
    Opcode.CMP:     REG_REG,
    Opcode.CMPL:    LIT_REG,
    Opcode.JMP:     ADDR,
    Opcode.JEQ:     ADDR,
    Opcode.JLT:     ADDR,
    Opcode.JLE:     ADDR,
    Opcode.JGT:     ADDR,
    Opcode.JGE:     ADDR,
    Opcode.JNE:     ADDR,
    Opcode.CALL:    ADDR,
    Opcode.RET:     NIL,
    Opcode.DBGREG:  REG,
    Opcode.DBGREGS: NIL,
}

MNEMONICS = {op.name: op for op in Opcode}

SIZES = {
    op: 1 + sum(KIND_FORMATS[kind].size for kind in signature)
    for op, signature in SIGNATURES.items()
}


def instruction_size(opcode: Opcode) -> int:
    """Encoded size in bytes of any instruction with this opcode."""
    return SIZES[opcode]


class DecodeError(ValueError):
    """Malformed program bytes, with the offending byte offset."""
    def __init__(self, message: str, offset: int = 0):
        self.message = message
        self.offset = offset
        super().__init__(f"Offset 0x{offset:04X}: {message}")


class TruncatedBuffer(DecodeError):
    pass


class UnknownOpcode(DecodeError):
    pass


class BadImage(DecodeError):
    pass


@dataclass(frozen=True)
class Instruction:
    """A single instruction: an opcode and its operand values."""
    opcode: Opcode
    operands: Tuple[int, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'opcode', Opcode(self.opcode))
        object.__setattr__(self, 'operands', tuple(self.operands))

        signature = self.signature
        if len(self.operands) != len(signature):
            raise ValueError(
                f"{self.opcode.name} takes {len(signature)} operand(s), got {len(self.operands)}"
            )
        for kind, value in zip(signature, self.operands):
            low, high = KIND_RANGES[kind]
            if not low <= value <= high:
                raise ValueError(f"{kind.value} operand out of range: {value}")

    @property
    def signature(self) -> Tuple[Kind, ...]:
        return SIGNATURES[self.opcode]

    def size(self) -> int:
        """Return encoded size in bytes."""
        return SIZES[self.opcode]

    def encode(self) -> bytes:
        """Encode instruction to bytes."""
        parts = [bytes([self.opcode])]
        for kind, value in zip(self.signature, self.operands):
            parts.append(KIND_FORMATS[kind].pack(value))
        return b''.join(parts)

    @classmethod
    def decode(cls, data: bytes, offset: int = 0) -> 'Instruction':
        """Decode the instruction starting at `offset`."""
        if offset >= len(data):
            raise TruncatedBuffer("Need at least 1 byte to decode an instruction", offset)

        try:
            opcode = Opcode(data[offset])
        except ValueError:
            raise UnknownOpcode(f"Invalid opcode: 0x{data[offset]:02X}", offset) from None

        if offset + SIZES[opcode] > len(data):
            raise TruncatedBuffer(
                f"{opcode.name} needs {SIZES[opcode]} bytes, only {len(data) - offset} left",
                offset,
            )

        operands = []
        pos = offset + 1
        for kind in SIGNATURES[opcode]:
            fmt = KIND_FORMATS[kind]
            operands.append(fmt.unpack_from(data, pos)[0])
            pos += fmt.size

        return cls(opcode, tuple(operands))

    def __str__(self) -> str:
        """Human-readable representation."""
        parts = [self.opcode.name]
        for kind, value in zip(self.signature, self.operands):
            if kind is Kind.REGISTER:
                parts.append(f"r{value}")
            elif kind is Kind.ADDRESS:
                parts.append(f"0x{value:04X}")
            else:
                parts.append(str(value))
        return " ".join(parts)


@dataclass(frozen=True)
class Program:
    """An encoded, immutable program addressed by byte offset."""
    code: bytes = b''

    def __post_init__(self):
        object.__setattr__(self, 'code', bytes(self.code))

    def __len__(self) -> int:
        return len(self.code)

    def decode_at(self, offset: int) -> Instruction:
        return Instruction.decode(self.code, offset)

    def instructions(self) -> Iterator[Tuple[int, Instruction]]:
        """Walk the program from offset 0, yielding (offset, instruction)."""
        offset = 0
        while offset < len(self.code):
            op = Instruction.decode(self.code, offset)
            yield offset, op
            offset += op.size()

    @classmethod
    def from_instructions(cls, instructions: Iterable[Instruction]) -> 'Program':
        return cls(b''.join(op.encode() for op in instructions))


def serialize(program: Program) -> bytes:
    """The program's encoding is already its wire format."""
    return program.code


def deserialize(data: bytes) -> Program:
    """Validate raw program bytes and wrap them as a Program."""
    data = bytes(data)
    offset = 0
    while offset < len(data):
        offset += Instruction.decode(data, offset).size()
    return Program(data)


def pack_image(program: Program, level: int = 22) -> bytes:
    """Encode program into a compressed image."""
    header = IMAGE_HEADER.pack(MAGIC, VERSION, len(program.code))
    return header + compress(program.code, level)


def unpack_image(data: bytes) -> Program:
    """Decode a compressed image back into a Program."""
    if len(data) < IMAGE_HEADER.size:
        raise BadImage("Data too short for image header")

    magic, version, code_len = IMAGE_HEADER.unpack_from(data)

    if magic != MAGIC:
        raise BadImage(f"Invalid magic bytes: {magic}")
    if version > VERSION:
        raise BadImage(f"Unsupported version: {version}")

    try:
        code = decompress(data[IMAGE_HEADER.size:])
    except ZstdError as e:
        raise BadImage(f"Corrupt image payload: {e}", IMAGE_HEADER.size) from e

    if len(code) != code_len:
        raise BadImage(f"Image declares {code_len} bytes of code, found {len(code)}", IMAGE_HEADER.size)

    return deserialize(code)


def load_program(data: bytes) -> Program:
    """Load either a packed image or a raw program."""
    if data[:len(MAGIC)] == MAGIC:
        return unpack_image(data)
    return deserialize(data)


def disassemble(program: Program) -> str:
    """Disassemble program to human-readable format."""
    listing = list(program.instructions())
    lines = [
        f"// Code length: {len(program)} bytes",
        f"// Instructions: {len(listing)}",
        "",
    ]

    for offset, op in listing:
        lines.append(f"0x{offset:04X}: {op}")

    return '\n'.join(lines)
