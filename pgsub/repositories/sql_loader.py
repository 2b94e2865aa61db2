from __future__ import annotations

from pathlib import Path


PACKAGE_ROOT = Path(__file__).resolve().parents[1]
SQL_DIR = Path(__file__).with_name("sql")
MIGRATIONS_DIR = PACKAGE_ROOT / "db" / "migrations"


def load_sql(name: str) -> str:
    return (SQL_DIR / name).read_text(encoding="utf-8").strip()


def migration_versions() -> list[str]:
    """Migration versions in apply order, e.g. ``0001_init``."""
    return sorted(path.name.removesuffix(".up.sql") for path in MIGRATIONS_DIR.glob("*.up.sql"))


def load_migration(version: str, *, direction: str = "up") -> str:
    if direction not in ("up", "down"):
        raise ValueError(f"unknown migration direction '{direction}'")
    return (MIGRATIONS_DIR / f"{version}.{direction}.sql").read_text(encoding="utf-8").strip()
