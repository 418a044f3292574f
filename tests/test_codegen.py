import pytest

from threepass import (
    compile_to_ast, compile_program, generate, generate_code, fold, peephole, render,
    Instruction, imm, arg, BinaryOp, IM, AR, SW, PU, PO, AD,
)
from machine import StackMachine, evaluate


class TestScenarios:
    def test_constant(self):
        assert compile_program("[ ] 1") == ["IM 1"]

    def test_argument(self):
        assert compile_program("[ x ] x") == ["AR 0"]

    def test_constant_sum_unfolded(self):
        assert compile_program("[ ] 1 + 1", optimize=False) == ["IM 1", "PU", "IM 1", "SW", "PO", "AD"]

    def test_constant_sum_folded(self):
        assert compile_program("[ ] 1 + 1") == ["IM 2"]

    def test_argument_sum(self):
        assert compile_program("[ x, y ] x + y") == ["AR 0", "PU", "AR 1", "SW", "PO", "AD"]

    def test_chained_sum(self):
        assert compile_program("[ a, b, c ] a + b + c") == [
            "AR 0", "PU", "AR 1", "SW", "PO", "AD", "PU", "AR 2", "SW", "PO", "AD",
        ]


class TestLeaves:
    def test_immediate_is_one_instruction(self):
        assert generate(imm(5)) == [Instruction(IM, 5)]

    def test_argument_is_one_instruction(self):
        assert generate(arg(3)) == [Instruction(AR, 3)]

    def test_raw_leaf_publishes_then_pops(self):
        assert render(generate(imm(1), peephole_opt=False)) == ["IM 1", "PU", "PO"]


def test_raw_binary_op():
    code = generate(BinaryOp("+", imm(1), imm(2)), peephole_opt=False)
    assert render(code) == ["IM 1", "PU", "IM 2", "PU", "PO", "SW", "PO", "AD", "PU", "PO"]


def test_generate_code_alias():
    node = compile_to_ast("[ x ] x - 1")
    assert generate_code(node) == generate(node)
    assert generate_code(node, peephole=False) == generate(node, peephole_opt=False)


def test_peephole_cascades():
    assert peephole([Instruction(PU), Instruction(PU), Instruction(PO), Instruction(PO)]) == []
    assert peephole([Instruction(PU), Instruction(SW), Instruction(PO)]) == [
        Instruction(PU), Instruction(SW), Instruction(PO),
    ]


def test_instruction_rendering():
    assert str(Instruction(IM, -3)) == "IM -3"
    assert str(Instruction(AR, 0)) == "AR 0"
    assert str(Instruction(AD)) == "AD"
    assert render([Instruction(SW), Instruction(PU)]) == ["SW", "PU"]


def test_instruction_parse():
    assert Instruction.parse("AR 2") == Instruction(AR, 2)
    assert Instruction.parse("IM -7") == Instruction(IM, -7)
    assert Instruction.parse("PO") == Instruction(PO)
    for bad in ("XX", "", "SW 1", "IM", "AR 1 2"):
        with pytest.raises(ValueError):
            Instruction.parse(bad)


def test_rejects_non_nodes():
    with pytest.raises(TypeError):
        generate(None)


PROGRAMS = [
    ("[ x ] x", [9]),
    ("[ x, y ] x - y", [3, 10]),
    ("[ a, b, c ] a - b - c", [10, 4, 1]),
    ("[ a, b, c ] a - (b - c)", [10, 4, 1]),
    ("[ a, b, c ] a * b + c", [2, 3, 4]),
    ("[ a, b, c ] a + b * c", [2, 3, 4]),
    ("[ a, b, c ] (a + b) * (c - a)", [2, 3, 7]),
    ("[ x, y, z ] x * (y - 3) + z * 2 - x", [5, -2, 11]),
    ("[ x, y ] (x + 1) * (y + 2) * (x - y)", [4, 6]),
    ("[ x, y, z ] ( 2*3*x + 5*y - 3*z ) / (1 + 3 + 2*2)", [4, 6, 2]),
    ("[ x, y ] x / y / 2", [-50, 3]),
    ("[ a, b ] (a - b) / (b - a * 2)", [7, 2]),
    ("[ ] 2 * (3 + 4) - 1", []),
]


@pytest.mark.parametrize("src,args", PROGRAMS)
@pytest.mark.parametrize("do_fold", [True, False])
@pytest.mark.parametrize("do_peephole", [True, False])
def test_machine_result_matches_evaluation(src, args, do_fold, do_peephole):
    node = compile_to_ast(src)
    expected = evaluate(node, args)
    if do_fold:
        node = fold(node)
    code = generate(node, peephole_opt=do_peephole)
    vm = StackMachine(args, stack=[111, 222])
    assert vm.run(code) == expected
    assert vm.stack == [111, 222]


@pytest.mark.parametrize("src,env", [
    ("[ x, y ] x + y * 3 - (x - y)", {"x": 8, "y": -5}),
    ("[ a, b, c ] a * b * c + a - b - c", {"a": 2, "b": 3, "c": 4}),
    ("[ p, q ] (p + q) * (p - q) + 7 * p", {"p": 12, "q": 9}),
])
def test_machine_result_matches_source_evaluation(src, env):
    expr = src.split("]", 1)[1]
    args = list(env.values())
    assert StackMachine(args).run(compile_program(src)) == eval(expr, {}, dict(env))


def test_mnemonics_run_on_machine():
    assert StackMachine([3, 4]).run(compile_program("[ x, y ] x * y - 2")) == 10


def test_code_makes_no_assumption_about_registers():
    code = compile_program("[ x, y ] x - y")
    vm = StackMachine([9, 4])
    vm.primary, vm.secondary = 1000, -1000
    assert vm.run(code) == 5


def test_long_chain():
    code = compile_program("[ x ] " + " + ".join(["x"] * 5000))
    assert len(code) == 1 + 5 * 4999
    vm = StackMachine([1], stack=[7])
    assert vm.run(code) == 5000
    assert vm.stack == [7]


def test_deep_right_nesting():
    src = "[ x ] " + "x - (" * 3000 + "x" + ")" * 3000
    vm = StackMachine([1], stack=[7])
    assert vm.run(compile_program(src)) == 1
    assert vm.stack == [7]
