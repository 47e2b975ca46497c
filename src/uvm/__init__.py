"""
UVM - a small register-and-stack virtual machine
================================================
Assembly text is assembled into a flat byte program, which can be written
out, read back and executed:

    ┌──────────┐    ┌───────────┐    ┌─────────┐    ┌───────────┐    ┌──────┐
    │ .uvm src │───>│ Assembler │───>│ Program │<──>│ raw bytes │    │  VM  │
    │          │    │ (2 passes)│    │ (bytes) │───────────────────>│      │
    └──────────┘    └───────────┘    └─────────┘    └───────────┘    └──────┘

    - assembler.py:  tokenizer and two-pass assembler with label/sublabel resolution
    - executable.py: instruction table, binary encoding, serializer, image files
    - vm.py:         execution engine
"""

__version__ = "0.1.0"

from .executable import (
    Instruction, Kind, Opcode, Program,
    DecodeError, TruncatedBuffer, UnknownOpcode, BadImage,
    serialize, deserialize, pack_image, unpack_image, load_program, disassemble,
)
from .assembler import (
    Assembler, AssemblerError, UnknownMnemonic, BadOperandArity, BadOperandKind,
    UnresolvedLabel, DuplicateLabel, MalformedLabel, assemble,
)
from .vm import (
    VM, Config, FinalState, Flag, Status, run,
    VMFault, StackOverflow, StackUnderflow, CallStackOverflow, CallStackUnderflow,
    DivisionByZero, InvalidRegister, IpOutOfBounds, UnknownOpcodeFault,
)
