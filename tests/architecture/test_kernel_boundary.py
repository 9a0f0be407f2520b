"""
Kernel boundary and ledger-write contract.

Tests that enforce the package layering:

1. costing_kernel/** may NOT import costing_engines, costing_services or
   costing_config.  The kernel never depends upward.

2. costing_engines/** are pure: no sqlalchemy, no models, no services.

3. Mirror rows (COGSAllocation with ``reversal_of_id``) are built only by
   ReversalService.

4. Services never commit: transaction boundaries belong to session_scope.

These tests read source code via AST -- they cannot break anything.
"""

import ast
from pathlib import Path

from costing_kernel.invariants import (
    ALL_COSTING_INVARIANTS,
    FORBIDDEN_KERNEL_IMPORTS,
    CostingInvariant,
)

ROOT = Path(__file__).resolve().parents[2]

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _python_files(package: str) -> list[Path]:
    return sorted((ROOT / package).rglob("*.py"))


def _parse(path: Path) -> ast.AST:
    return ast.parse(path.read_text(), filename=str(path))


def _extract_imports(path: Path) -> list[tuple[int, str]]:
    """(line_number, module) for every import in a file."""
    results: list[tuple[int, str]] = []
    for node in ast.walk(_parse(path)):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom) and node.module:
            results.append((node.lineno, node.module))
    return results


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found = []
    for path in _python_files(package):
        for lineno, module in _extract_imports(path):
            if any(module == p or module.startswith(f"{p}.") for p in forbidden):
                found.append(f"  {path.relative_to(ROOT)}:{lineno} imports '{module}'")
    return found


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestKernelNoUpwardDependencies:
    """costing_kernel/** must not import the layers above it."""

    def test_kernel_does_not_import_upper_layers(self):
        violations = _violations("costing_kernel", FORBIDDEN_KERNEL_IMPORTS)

        assert not violations, (
            "Kernel boundary violation:\n" + "\n".join(violations)
        )


class TestEnginesArePure:
    """Engines compute; they never touch the database."""

    def test_engines_do_not_import_persistence(self):
        violations = _violations(
            "costing_engines",
            ("sqlalchemy", "costing_kernel.models", "costing_kernel.services", "costing_services"),
        )

        assert not violations, "Impure engine import:\n" + "\n".join(violations)


class TestSingleReversalPath:
    """Only ReversalService writes mirror rows."""

    def test_mirror_rows_built_only_by_reversal_service(self):
        writers = set()
        for package in ("costing_kernel", "costing_services"):
            for path in _python_files(package):
                for node in ast.walk(_parse(path)):
                    if (
                        isinstance(node, ast.Call)
                        and isinstance(node.func, ast.Name)
                        and node.func.id == "COGSAllocation"
                        and any(kw.arg == "reversal_of_id" for kw in node.keywords)
                    ):
                        writers.add(path.relative_to(ROOT).as_posix())

        assert writers == {"costing_kernel/services/reversal_service.py"}


class TestServicesNeverCommit:
    """``session.commit()`` only appears in db/engine.py's session_scope."""

    def test_no_session_commit_in_services(self):
        offenders = []
        for package in ("costing_kernel/services", "costing_services"):
            for path in _python_files(package):
                for node in ast.walk(_parse(path)):
                    if (
                        isinstance(node, ast.Call)
                        and isinstance(node.func, ast.Attribute)
                        and node.func.attr in ("commit", "rollback")
                        and "session" in ast.unparse(node.func.value)
                    ):
                        offenders.append(f"{path.relative_to(ROOT)}:{node.lineno}")

        assert not offenders, "Service commits its own transaction: " + ", ".join(offenders)


class TestCostingInvariantsDeclaration:
    """The costing invariants contract must be declared and complete."""

    def test_required_invariants_declared(self):
        required = {
            "LAYER_BOUND",
            "LEDGER_CONSISTENCY",
            "FIFO_ORDER",
            "APPEND_ONLY_LEDGER",
            "SINGLE_REVERSAL",
            "ATOMIC_APPLY",
        }
        declared = {inv.name for inv in CostingInvariant}

        assert required <= declared, f"Missing costing invariants: {required - declared}"
        assert ALL_COSTING_INVARIANTS == frozenset(CostingInvariant)

    def test_forbidden_imports_declared(self):
        for pkg in ("costing_engines", "costing_services", "costing_config"):
            assert pkg in FORBIDDEN_KERNEL_IMPORTS
