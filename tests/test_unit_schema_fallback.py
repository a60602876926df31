import pytest
from sqlalchemy import JSON, Boolean, Column, DateTime, MetaData, String, Table, create_engine, func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from app.services.schema_fallback import (
    SchemaErrorKind,
    SchemaFallbackExhausted,
    classify_db_error,
    drop_fields,
    insert_with_fallback,
    select_with_fallback,
    update_with_fallback,
)
from app.services.webhook_configs import create_config, list_configs


@pytest.fixture()
def legacy_session():
    """A table migrated without the optional ``description`` column."""
    engine = create_engine("sqlite+pysqlite:///:memory:")
    legacy = MetaData()
    Table("configs", legacy, Column("id", String, primary_key=True), Column("name", String, unique=True))
    legacy.create_all(engine)
    session = sessionmaker(bind=engine)()
    yield session
    session.close()
    engine.dispose()


# What the code believes the table looks like
current = MetaData()
configs = Table(
    "configs",
    current,
    Column("id", String, primary_key=True),
    Column("name", String),
    Column("description", String),
)


def test_insert_falls_back_to_subset_without_missing_column(legacy_session):
    candidates = drop_fields({"id": "c1", "name": "alpha", "description": "first"}, ["description"])
    outcome = insert_with_fallback(legacy_session, configs, candidates)
    assert outcome.degraded is True
    assert outcome.values == {"id": "c1", "name": "alpha"}

    read = select_with_fallback(legacy_session, configs, [["id", "name", "description"], ["id", "name"]])
    assert read.rows == [{"id": "c1", "name": "alpha"}]


def test_update_falls_back_and_reports_rowcount(legacy_session):
    insert_with_fallback(legacy_session, configs, [{"id": "c1", "name": "alpha"}])
    outcome = update_with_fallback(
        legacy_session,
        configs,
        [configs.c.id == "c1"],
        [{"name": "beta", "description": "x"}, {"name": "beta"}],
    )
    assert outcome.rowcount == 1
    assert outcome.attempt == 1


def test_exhausted_when_minimal_subset_also_fails(legacy_session):
    with pytest.raises(SchemaFallbackExhausted):
        insert_with_fallback(legacy_session, configs, [{"id": "c1", "description": "only optional"}])


def test_unique_violation_is_not_retried(legacy_session):
    insert_with_fallback(legacy_session, configs, [{"id": "c1", "name": "alpha"}])
    with pytest.raises(IntegrityError):
        insert_with_fallback(legacy_session, configs, [{"id": "c2", "name": "alpha"}, {"id": "c3", "name": "alpha"}])


def test_classifier_uses_sqlstate_and_messages():
    class PgError(Exception):
        pgcode = "42703"

    assert classify_db_error(OperationalError("stmt", {}, PgError("boom"))) is SchemaErrorKind.MISSING_COLUMN
    assert classify_db_error(OperationalError("stmt", {}, Exception("no such table: stores"))) is SchemaErrorKind.MISSING_TABLE
    assert classify_db_error(IntegrityError("stmt", {}, Exception("UNIQUE constraint failed: configs.name"))) is SchemaErrorKind.UNIQUE_VIOLATION
    assert classify_db_error(OperationalError("stmt", {}, Exception("disk I/O error"))) is SchemaErrorKind.FATAL


def test_drop_fields_is_cumulative():
    subsets = drop_fields({"a": 1, "b": 2, "c": 3}, ["b"], ["c"])
    assert subsets == [{"a": 1, "b": 2, "c": 3}, {"a": 1, "c": 3}, {"a": 1}]


@pytest.fixture()
def premigration_config_session():
    """webhook_configs as it existed before the description column was added."""
    engine = create_engine("sqlite+pysqlite:///:memory:")
    legacy = MetaData()
    Table(
        "webhook_configs",
        legacy,
        Column("id", String, primary_key=True),
        Column("name", String, nullable=False),
        Column("scope", String),
        Column("target_url", String, nullable=False),
        Column("method", String),
        Column("headers", JSON),
        Column("enabled", Boolean, server_default="1"),
        Column("product_id", String),
        Column("created_at", DateTime(timezone=True), server_default=func.now()),
        Column("updated_at", DateTime(timezone=True)),
    )
    legacy.create_all(engine)
    session = sessionmaker(bind=engine)()
    yield session
    session.close()
    engine.dispose()


def test_webhook_config_create_survives_missing_description_column(premigration_config_session):
    row = create_config(premigration_config_session, {
        "name": "Mugs automation",
        "target_url": "https://n8n.example.com/webhook/mugs",
        "description": "dropped on old schemas",
        "scope": "automation",
        "product_id": "prod_mugs",
        "headers": {"X-Api-Key": "k", "X-Retries": 3},
    })

    assert "description" not in row
    assert row["name"] == "Mugs automation"
    assert row["product_id"] == "prod_mugs"
    assert row["headers"] == {"X-Api-Key": "k", "X-Retries": "3"}
    assert [r["id"] for r in list_configs(premigration_config_session)] == [row["id"]]
