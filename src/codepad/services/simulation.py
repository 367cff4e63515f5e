"""Non-executing stand-in used when isolation is disabled or unavailable.

Nothing here runs the submitted program. A few textual heuristics decide
success and the output is the literal arguments of ``io.print("...")`` calls.
"""
from __future__ import annotations
import re

from ..core.models import ExecutionResult, FailureKind

BANNER = "[simulation] Sandboxed execution unavailable; this output was not produced by running your program."
NO_OUTPUT = "Program executed successfully with no output."

_MAIN = re.compile(r"\bfn\s+main\s*\(\s*\)")
_UNTYPED_MUT = re.compile(r"\bmut\s+\w+\s*(?!\s*:)[=;]")
_NUM_PLUS_STR = re.compile(r"\w+\s*=\s*\w+\s*\+\s*\"[^\"]*\"")
_IF_WITHOUT_BLOCK = re.compile(r"^\s*(?:}\s*else\s+)?if\b[^{\n]*$", re.MULTILINE)
_PRINT = re.compile(r"io\.print\s*\(\s*\"([^\"]*)\"\s*\)")

# first match wins
CHECKS = [
    (lambda code: not _MAIN.search(code), "Error: No main function found"),
    (lambda code: "// ERROR" in code, "Error: Syntax error in code"),
    (lambda code: bool(_UNTYPED_MUT.search(code)),
     "Error: Mutable variable declarations require a type annotation"),
    (lambda code: bool(_NUM_PLUS_STR.search(code)), "Error: Cannot add numeric and string types"),
    (lambda code: bool(_IF_WITHOUT_BLOCK.search(code)), "Error: Missing block after if condition"),
]


def printed_literals(code: str) -> list:
    return _PRINT.findall(code)


def simulate(code: str) -> ExecutionResult:
    for failed, message in CHECKS:
        if failed(code):
            return ExecutionResult(
                success=False,
                output=BANNER + "\n",
                error=message,
                failure=FailureKind.COMPILE_ERROR,
                simulated=True,
            )

    lines = printed_literals(code)
    body = "".join(line + "\n" for line in lines) if lines else NO_OUTPUT + "\n"
    return ExecutionResult(success=True, output=BANNER + "\n" + body, simulated=True)
