import pytest

from codepad.core.models import FailureKind
from codepad.services.simulation import BANNER, NO_OUTPUT, printed_literals, simulate


def test_prints_literals_in_order():
    code = 'fn main() {\n    io.print("first")\n    io.print("second")\n}\n'
    result = simulate(code)

    assert result.success
    assert result.simulated
    assert result.error is None
    assert result.output == BANNER + "\nfirst\nsecond\n"


def test_no_prints():
    result = simulate("fn main() {\n    let x: Int = 1;\n}\n")
    assert result.success
    assert result.output == BANNER + "\n" + NO_OUTPUT + "\n"


def test_output_is_always_marked():
    for code in ('fn main() { io.print("x") }', "nothing here"):
        assert simulate(code).output.startswith(BANNER)


@pytest.mark.parametrize("code,message", [
    ('io.print("hi")', "Error: No main function found"),
    ('fn main() { io.print("x") } // ERROR', "Error: Syntax error in code"),
    ("fn main() {\n    mut x = 5;\n}", "Error: Mutable variable declarations require a type annotation"),
    ('fn main() {\n    let s = n + "a";\n}', "Error: Cannot add numeric and string types"),
    ("fn main() {\n    if x > 1\n        io.print(\"big\")\n}", "Error: Missing block after if condition"),
])
def test_heuristic_failures(code, message):
    result = simulate(code)
    assert not result.success
    assert result.simulated
    assert result.error == message
    assert result.failure == FailureKind.COMPILE_ERROR


def test_well_formed_code_passes_heuristics():
    code = (
        "fn main() {\n"
        "    mut count: Int = 0;\n"
        "    if count > 1 {\n"
        '        io.print("big")\n'
        "    } else if count == 0 {\n"
        '        io.print("zero")\n'
        "    }\n"
        "}\n"
    )
    result = simulate(code)
    assert result.success, result.error
    assert result.output.endswith("big\nzero\n")


def test_printed_literals_ignores_non_literal_args():
    assert printed_literals('io.print(name)\nio.print( "a" )\nio.print("")') == ["a", ""]
