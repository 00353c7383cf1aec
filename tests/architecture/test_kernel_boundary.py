"""
Kernel boundary and invariants contract.

Tests that enforce the package layering:

1. harvest_kernel/** may NOT import harvest_config, harvest_sync or
   harvest_services. The kernel never depends upward.

2. harvest_sync/** may import the kernel but not harvest_config or
   harvest_services, so the sync layer runs on a server without the
   device's service shell.

3. harvest_kernel/domain/** is pure: no SQLAlchemy, no threads, no
   wall-clock reads outside clock.py.

4. The kernel invariants declaration is complete and non-empty.

These tests read source code via AST and cannot break anything.
"""

import ast
import glob
from pathlib import Path

from harvest_kernel.invariants import (
    ALL_KERNEL_INVARIANTS,
    FORBIDDEN_KERNEL_IMPORTS,
    KernelInvariant,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_REPO_ROOT = Path(__file__).resolve().parents[2]


def _python_files(root: str) -> list[str]:
    """Return all .py files under root."""
    return sorted(glob.glob(f"{_REPO_ROOT / root}/**/*.py", recursive=True))


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    """Extract (line_number, module_string) for all imports in a file."""
    try:
        source = Path(filepath).read_text()
        tree = ast.parse(source, filename=filepath)
    except (SyntaxError, UnicodeDecodeError):
        return []

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
    return results


def _violations(root: str, forbidden: tuple[str, ...]) -> list[str]:
    found: list[str] = []
    for filepath in _python_files(root):
        for lineno, module in _extract_imports(filepath):
            for prefix in forbidden:
                if module == prefix or module.startswith(f"{prefix}."):
                    found.append(f"  {filepath}:{lineno} imports '{module}'")
    return found


# ---------------------------------------------------------------------------
# Test: Kernel has no upward dependencies
# ---------------------------------------------------------------------------


class TestKernelNoUpwardDependencies:
    """harvest_kernel/** must not import config, sync or services."""

    def test_kernel_does_not_import_forbidden_packages(self):
        violations = _violations("harvest_kernel", FORBIDDEN_KERNEL_IMPORTS)
        assert not violations, (
            "Kernel boundary violation: harvest_kernel/** must not import "
            "upward packages:\n" + "\n".join(violations)
        )

    def test_forbidden_list_names_every_upper_package(self):
        assert set(FORBIDDEN_KERNEL_IMPORTS) == {
            "harvest_config",
            "harvest_sync",
            "harvest_services",
        }


class TestSyncLayerBoundary:
    """harvest_sync/** depends on the kernel only."""

    def test_sync_does_not_import_config_or_services(self):
        violations = _violations("harvest_sync", ("harvest_config", "harvest_services"))
        assert not violations, (
            "Sync boundary violation:\n" + "\n".join(violations)
        )


class TestDomainPurity:
    """The functional core performs no I/O."""

    IMPURE_PREFIXES = ("sqlalchemy", "threading", "concurrent", "socket", "requests")

    def test_domain_has_no_io_imports(self):
        violations = _violations("harvest_kernel/domain", self.IMPURE_PREFIXES)
        assert not violations, (
            "Domain purity violation:\n" + "\n".join(violations)
        )

    def test_only_clock_reads_wall_time(self):
        offenders: list[str] = []
        for filepath in _python_files("harvest_kernel/domain"):
            if filepath.endswith("clock.py"):
                continue
            source = Path(filepath).read_text()
            for needle in ("datetime.now(", "datetime.utcnow(", "time.time("):
                if needle in source:
                    offenders.append(f"  {filepath} calls {needle}")
        assert not offenders, "\n".join(offenders)


# ---------------------------------------------------------------------------
# Test: Invariants declaration
# ---------------------------------------------------------------------------


class TestKernelInvariantsDeclaration:
    def test_invariants_declared(self):
        assert len(ALL_KERNEL_INVARIANTS) == len(KernelInvariant)
        assert len(ALL_KERNEL_INVARIANTS) >= 6

    def test_each_invariant_documented(self):
        source = (_REPO_ROOT / "harvest_kernel" / "invariants.py").read_text()
        for invariant in KernelInvariant:
            assert f'"{invariant.value}"' in source
