"""
Example program tests.

Runs the programs in tests/programs end to end, directly and after a trip
through the serializer and the image container.
"""
import pytest

from uvm.assembler import assemble
from uvm.executable import deserialize, pack_image, serialize, unpack_image
from uvm.vm import VM, CallStackOverflow, Config, Flag, Status, run


def run_file(read_program, name: str, config: Config = None) -> VM:
    vm = VM(assemble(read_program(name)), config)
    vm.run()
    assert vm.status is Status.HALTED
    return vm


class TestExamplePrograms:

    def test_basic_arithmetic(self, read_program):
        vm = run_file(read_program, "basic_arithmetic.uvm")
        assert vm.regs[1:14] == [22, 10, 50, 5, 3, 11, 9, -11, -30, 8, -8, 4, 9]

    def test_basic_loop(self, read_program):
        vm = run_file(read_program, "basic_loop.uvm")
        assert vm.regs[0:2] == [0, 1275]

    def test_basic_stack(self, read_program):
        vm = run_file(read_program, "basic_stack.uvm")
        assert vm.regs[:3] == [0, 20, 10]

    def test_rf_push_pop(self, read_program):
        vm = run_file(read_program, "rf_push_pop.uvm")
        assert vm.regs[:10] == [10, 11, 12, 13, 14, 15, 16, 17, 0, 0]

    def test_conditional_jumps(self, read_program):
        vm = run_file(read_program, "conditional_jump_tests.uvm")
        assert vm.regs[7] == 1
        assert vm.flag is Flag.GREATER

    def test_factorial(self, read_program):
        vm = run_file(read_program, "factorial.uvm")
        assert vm.regs[0] == 120
        assert vm.stack == []
        assert vm.call_stack == []

    def test_recursive_fibonacci(self, read_program):
        vm = run_file(read_program, "recursive_fibonacci.uvm")
        assert vm.regs[0] == 6765
        assert vm.stack == []
        assert vm.call_stack == []

    def test_fibonacci_needs_call_depth(self, read_program):
        program = assemble(read_program("recursive_fibonacci.uvm"))
        with pytest.raises(CallStackOverflow):
            run(program, Config(call_stack_capacity=10))


class TestRoundTrip:

    @pytest.mark.parametrize("name", [
        "basic_arithmetic.uvm",
        "basic_loop.uvm",
        "conditional_jump_tests.uvm",
        "factorial.uvm",
        "recursive_fibonacci.uvm",
    ])
    def test_same_final_state(self, read_program, name):
        program = assemble(read_program(name))
        restored = deserialize(serialize(program))
        assert restored == program
        assert run(restored) == run(program)

    def test_image_runs(self, read_program):
        program = assemble(read_program("factorial.uvm"))
        state = run(unpack_image(pack_image(program)))
        assert state.registers[0] == 120
