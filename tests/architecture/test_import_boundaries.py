"""
Import-boundary enforcement for the migration layers.

1. Dependency direction -- every package imports only from the layers
                           below it (module-level imports).
2. Domain purity        -- domain modules may not import the ORM, DB
                           drivers or the service layer.
3. Clock discipline     -- only migration_kernel.domain.clock reads the
                           wall clock.

All scanning is done via AST; these tests are read-only.
"""

import ast
import glob
from pathlib import Path

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

PACKAGES = (
    "migration_kernel",
    "migration_config",
    "migration_ingestion",
    "migration_batch",
    "migration_reconciliation",
    "migration_jobs",
    "migration_services",
)

ALLOWED = {
    "migration_kernel": set(),
    "migration_config": {"migration_kernel"},
    "migration_ingestion": {"migration_kernel", "migration_config"},
    "migration_batch": {"migration_kernel", "migration_config", "migration_ingestion"},
    "migration_reconciliation": {
        "migration_kernel", "migration_config", "migration_ingestion", "migration_batch",
    },
    "migration_jobs": {
        "migration_kernel", "migration_config", "migration_ingestion",
        "migration_reconciliation",
    },
    "migration_services": set(PACKAGES) - {"migration_services"},
}


def _python_files(root: str) -> list[str]:
    return sorted(glob.glob(f"{root}/**/*.py", recursive=True))


def _module_level_imports(filepath: str) -> list[tuple[int, str]]:
    """(line, module) for imports outside function bodies."""
    tree = ast.parse(Path(filepath).read_text(), filename=filepath)
    results: list[tuple[int, str]] = []

    def visit(nodes):
        for node in nodes:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                continue
            if isinstance(node, ast.Import):
                results.extend((node.lineno, alias.name) for alias in node.names)
            elif isinstance(node, ast.ImportFrom) and node.module:
                results.append((node.lineno, node.module))
            elif isinstance(node, (ast.ClassDef, ast.If, ast.Try)):
                visit(ast.iter_child_nodes(node))

    visit(tree.body)
    return results


def _top_package(module: str) -> str:
    return module.split(".", 1)[0]


# ---------------------------------------------------------------------------
# 1. Dependency direction
# ---------------------------------------------------------------------------


class TestDependencyDirection:
    def test_packages_only_import_lower_layers(self):
        violations: list[str] = []
        for package in PACKAGES:
            allowed = ALLOWED[package] | {package}
            for filepath in _python_files(package):
                for lineno, module in _module_level_imports(filepath):
                    top = _top_package(module)
                    if top.startswith("migration_") and top not in allowed:
                        violations.append(f"  {filepath}:{lineno} imports '{module}'")

        assert not violations, (
            "Layering violation, imports point upward:\n" + "\n".join(violations)
        )

    def test_every_package_is_declared(self):
        on_disk = {p.name for p in Path(".").glob("migration_*") if p.is_dir()}
        assert on_disk == set(PACKAGES)


# ---------------------------------------------------------------------------
# 2. Domain purity
# ---------------------------------------------------------------------------


class TestDomainPurity:
    FORBIDDEN_PREFIXES = (
        "sqlalchemy",
        "psycopg2",
        "sqlite3",
        "migration_kernel.db",
        "migration_services",
    )

    def _domain_files(self) -> list[str]:
        files = [f for p in PACKAGES for f in _python_files(f"{p}/domain")]
        files.append("migration_reconciliation/domain.py")
        return files

    def test_domain_modules_have_no_persistence_imports(self):
        violations: list[str] = []
        for filepath in self._domain_files():
            for lineno, module in _module_level_imports(filepath):
                if any(
                    module == prefix or module.startswith(f"{prefix}.")
                    for prefix in self.FORBIDDEN_PREFIXES
                ):
                    violations.append(f"  {filepath}:{lineno} imports '{module}'")

        assert not violations, (
            "Domain purity violation:\n" + "\n".join(violations)
        )


# ---------------------------------------------------------------------------
# 3. Clock discipline
# ---------------------------------------------------------------------------


class TestClockDiscipline:
    WALL_CLOCK = {("datetime", "now"), ("datetime", "utcnow"), ("date", "today")}

    def test_only_the_clock_reads_wall_time(self):
        violations: list[str] = []
        for package in PACKAGES:
            for filepath in _python_files(package):
                if filepath.endswith("migration_kernel/domain/clock.py"):
                    continue
                tree = ast.parse(Path(filepath).read_text(), filename=filepath)
                for node in ast.walk(tree):
                    if (
                        isinstance(node, ast.Attribute)
                        and isinstance(node.value, ast.Name)
                        and (node.value.id, node.attr) in self.WALL_CLOCK
                    ):
                        violations.append(f"  {filepath}:{node.lineno} {node.value.id}.{node.attr}")

        assert not violations, (
            "Wall-clock reads outside migration_kernel.domain.clock:\n"
            + "\n".join(violations)
        )
