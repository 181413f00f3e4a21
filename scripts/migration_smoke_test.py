import os
import tempfile
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

REQUIRED_TABLES = {"offers", "affiliates", "clicks", "order_attributions", "commissions", "fraud_flags"}


def _make_alembic_config(db_url: str) -> Config:
    backend_dir = Path(__file__).resolve().parents[1] / "backend"
    config = Config(str(backend_dir / "alembic.ini"))
    config.set_main_option("script_location", str(backend_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", db_url)
    config.set_main_option("prepend_sys_path", str(backend_dir))
    return config


def _missing_tables(db_url: str) -> set[str]:
    engine = create_engine(db_url, future=True)
    try:
        return REQUIRED_TABLES - set(inspect(engine).get_table_names())
    finally:
        engine.dispose()


def main() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        db_url = f"sqlite:///{Path(tmpdir) / 'affiliate_migration_smoke.db'}"
        os.environ["DATABASE_URL"] = db_url
        os.environ["SECRET_KEY"] = os.getenv("SECRET_KEY", "smoke-test-secret")

        config = _make_alembic_config(db_url)
        command.upgrade(config, "head")
        missing = _missing_tables(db_url)
        if missing:
            raise SystemExit(f"Missing tables after upgrade: {sorted(missing)}")
        command.downgrade(config, "base")
        command.upgrade(config, "head")
        print("Migration smoke test passed.")


if __name__ == "__main__":
    main()
