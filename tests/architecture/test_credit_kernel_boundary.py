"""
Kernel boundary and domain purity.

1. credit_kernel/** may NOT import the packages named in
   FORBIDDEN_KERNEL_IMPORTS.  The kernel never depends upward.
2. credit_kernel/domain/** is pure: standard library, other domain
   modules and the exception hierarchy only.  ORM models may be named
   under ``if TYPE_CHECKING:`` for annotations.
3. The transaction model is written only inside the kernel; services go
   through TransactionLog.
4. credit_config never imports credit_services.
5. The invariants declaration is complete.

These tests read source code via AST and cannot break anything.
"""

import ast
import sys
from pathlib import Path

from credit_kernel.invariants import (
    ALL_LEDGER_INVARIANTS,
    FORBIDDEN_KERNEL_IMPORTS,
    LedgerInvariant,
)

ROOT = Path(__file__).resolve().parents[2]

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _python_files(package: str) -> list[Path]:
    return sorted((ROOT / package).rglob("*.py"))


def _is_type_checking_block(node: ast.AST) -> bool:
    if not isinstance(node, ast.If):
        return False
    test = node.test
    return (isinstance(test, ast.Name) and test.id == "TYPE_CHECKING") or (
        isinstance(test, ast.Attribute) and test.attr == "TYPE_CHECKING"
    )


def _extract_imports(path: Path, skip_type_checking: bool = False) -> list[tuple[int, str]]:
    """(line_number, module) for every import in ``path``."""
    tree = ast.parse(path.read_text(), filename=str(path))
    skipped: set[int] = set()
    if skip_type_checking:
        for node in ast.walk(tree):
            if _is_type_checking_block(node):
                skipped.update(id(child) for child in ast.walk(node))

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if id(node) in skipped:
            continue
        if isinstance(node, ast.Import):
            results.extend((node.lineno, alias.name) for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.module and node.level == 0:
            results.append((node.lineno, node.module))
    return results


def _matches(module: str, prefix: str) -> bool:
    return module == prefix or module.startswith(f"{prefix}.")


def _violations(package: str, forbidden, skip_type_checking: bool = False) -> list[str]:
    found = []
    for path in _python_files(package):
        for lineno, module in _extract_imports(path, skip_type_checking):
            if any(_matches(module, prefix) for prefix in forbidden):
                found.append(f"  {path.relative_to(ROOT)}:{lineno} imports '{module}'")
    return found


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestKernelNoUpwardDependencies:

    def test_kernel_does_not_import_forbidden_packages(self):
        violations = _violations("credit_kernel", FORBIDDEN_KERNEL_IMPORTS)
        assert not violations, (
            "Kernel boundary violation, credit_kernel/** must not import "
            "upward packages:\n" + "\n".join(violations)
        )

    def test_config_does_not_import_services(self):
        violations = _violations("credit_config", ("credit_services",))
        assert not violations, "\n".join(violations)


class TestDomainPurity:

    ALLOWED_FIRST_PARTY = ("credit_kernel.domain", "credit_kernel.exceptions")

    def test_domain_imports_stdlib_and_domain_only(self):
        violations = []
        for path in _python_files("credit_kernel/domain"):
            for lineno, module in _extract_imports(path, skip_type_checking=True):
                top = module.split(".")[0]
                if top in sys.stdlib_module_names or top == "__future__":
                    continue
                if any(_matches(module, allowed) for allowed in self.ALLOWED_FIRST_PARTY):
                    continue
                violations.append(f"  {path.relative_to(ROOT)}:{lineno} imports '{module}'")

        assert not violations, (
            "Domain purity violation, credit_kernel/domain/** must not do I/O "
            "or depend on persistence:\n" + "\n".join(violations)
        )

    def test_type_checking_imports_are_not_counted(self):
        source = ROOT / "credit_kernel" / "domain" / "dtos.py"
        everything = {m for _, m in _extract_imports(source)}
        runtime = {m for _, m in _extract_imports(source, skip_type_checking=True)}
        assert "credit_kernel.models.account" in everything - runtime


class TestTransactionModelGate:

    def test_services_never_touch_transaction_rows(self):
        violations = _violations("credit_services", ("credit_kernel.models.transaction",))
        assert not violations, (
            "credit_services must append and read the log through "
            "TransactionLog:\n" + "\n".join(violations)
        )


class TestInvariantsDeclaration:

    def test_invariants_are_declared(self):
        assert ALL_LEDGER_INVARIANTS == frozenset(LedgerInvariant)
        assert len(ALL_LEDGER_INVARIANTS) == 6
        assert LedgerInvariant("balance_equation") is LedgerInvariant.BALANCE_EQUATION

    def test_forbidden_list_names_real_packages(self):
        for package in FORBIDDEN_KERNEL_IMPORTS:
            assert (ROOT / package / "__init__.py").is_file()
