import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

ROOT = Path(__file__).resolve().parents[1]


def test_upgrade_creates_tables_and_logs_only_dialect(tmp_path, caplog) -> None:
    url = f"sqlite:///{tmp_path / 'bills.db'}"
    config = Config()
    config.set_main_option("script_location", str(ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", url)

    with caplog.at_level(logging.INFO, logger="alembic.env"):
        command.upgrade(config, "head")

    tables = set(inspect(create_engine(url)).get_table_names())
    assert {"bill_templates", "bill_occurrences", "autopay_runs", "notifications"} <= tables
    messages = [r.getMessage() for r in caplog.records if r.name == "alembic.env"]
    assert any("dialect=sqlite" in message for message in messages)
    assert not any(url in message for message in messages)
