"""
Tests for record storage and authorship stamping.
"""

from uuid import uuid4

import pytest
from conftest import FakeStore

from audit_backend.models import RequestContext
from audit_backend.repository import AuditedRepository, PostgresRecordStore, RecordNotFound


@pytest.fixture
def repository(request_context):
    return AuditedRepository(FakeStore(), request_context)


class TestAuditedRepository:
    """Tests for created_by/updated_by stamping."""

    @pytest.mark.asyncio
    async def test_create_stamps_author(self, repository):
        record = await repository.create({"name": "Ada", "email": "ada@example.com"})

        assert record["created_by"] == "Xjaafefeefq"
        assert "updated_by" not in record

    @pytest.mark.asyncio
    async def test_create_overrides_supplied_author(self, repository):
        record = await repository.create({"name": "Ada", "created_by": "someone-else"})

        assert record["created_by"] == "Xjaafefeefq"

    @pytest.mark.asyncio
    async def test_create_many(self, repository):
        records = await repository.create_many([{"name": "a"}, {"name": "b"}])

        assert [r["created_by"] for r in records] == ["Xjaafefeefq", "Xjaafefeefq"]

    @pytest.mark.asyncio
    async def test_update_stamps_editor(self, request_context):
        store = FakeStore()
        created = await AuditedRepository(store, request_context).create({"name": "Ada"})
        editor = AuditedRepository(store, RequestContext(actor_id="editor-1"))

        updated = await editor.update_by_id(created["id"], {"name": "Ada L."})

        assert updated["name"] == "Ada L."
        assert updated["created_by"] == "Xjaafefeefq"
        assert updated["updated_by"] == "editor-1"

    @pytest.mark.asyncio
    async def test_update_missing_record(self, repository):
        with pytest.raises(RecordNotFound):
            await repository.update_by_id(uuid4(), {"name": "x"})

    @pytest.mark.asyncio
    async def test_upsert_stamps_both(self, repository):
        record = await repository.upsert({"email": "ada@example.com", "name": "Ada"}, ["email"])

        assert record["created_by"] == "Xjaafefeefq"
        assert record["updated_by"] == "Xjaafefeefq"

    @pytest.mark.asyncio
    async def test_find_all_returns_total(self, repository):
        for name in ("a", "b", "c"):
            await repository.create({"name": name})

        items, total = await repository.find_all(limit=2)

        assert len(items) == 2
        assert total == 3

    @pytest.mark.asyncio
    async def test_find_by_id_or_fail(self, repository):
        record = await repository.create({"name": "Ada"})

        assert (await repository.find_by_id_or_fail(record["id"]))["name"] == "Ada"
        with pytest.raises(RecordNotFound):
            await repository.find_by_id_or_fail(uuid4())

    @pytest.mark.asyncio
    async def test_soft_delete_hides_record(self, repository):
        record = await repository.create({"name": "Ada"})

        assert await repository.soft_delete(record["id"]) is True
        assert await repository.find_by_id(record["id"]) is None
        assert await repository.soft_delete(record["id"]) is False

    @pytest.mark.asyncio
    async def test_delete(self, repository):
        record = await repository.create({"name": "Ada"})

        assert await repository.delete(record["id"]) is True
        assert await repository.delete(record["id"]) is False


class TestPostgresRecordStore:
    """Tests for the SQL issued against PostgreSQL."""

    @pytest.fixture
    def store(self, mock_db):
        return PostgresRecordStore(mock_db, "users", ("name", "email", "created_by", "updated_by"))

    @pytest.mark.asyncio
    async def test_insert(self, store, mock_db):
        mock_db.row = {"id": "u1", "name": "Ada"}

        record = await store.insert({"name": "Ada", "created_by": "actor"})

        query, args = mock_db.queries[0]
        assert query == "INSERT INTO users (name, created_by) VALUES ($1, $2) RETURNING *"
        assert args == ("Ada", "actor")
        assert record == {"id": "u1", "name": "Ada"}

    @pytest.mark.asyncio
    async def test_find_with_conditions(self, store, mock_db):
        mock_db.rows = [{"id": "u1"}]

        rows = await store.find([("name", "=", "Ada"), ("created_at", ">=", "t0")], limit=10, offset=5)

        query, args = mock_db.queries[0]
        assert query == (
            "SELECT * FROM users WHERE deleted_at IS NULL AND name = $1 AND created_at >= $2 "
            "ORDER BY created_at DESC OFFSET $3 LIMIT $4"
        )
        assert args == ("Ada", "t0", 5, 10)
        assert rows == [{"id": "u1"}]

    @pytest.mark.asyncio
    async def test_update(self, store, mock_db):
        mock_db.row = None

        assert await store.update("u1", {"name": "Ada"}) is None

        query, args = mock_db.queries[0]
        assert query.startswith("UPDATE users SET name = $1, updated_at = CURRENT_TIMESTAMP")
        assert "WHERE id = $2 AND deleted_at IS NULL" in query
        assert args == ("Ada", "u1")

    @pytest.mark.asyncio
    async def test_upsert_keeps_creator(self, store, mock_db):
        mock_db.row = {"id": "u1"}

        await store.upsert({"email": "a@x", "name": "Ada", "created_by": "c"}, ["email"])

        query, _ = mock_db.queries[0]
        assert "ON CONFLICT (email) DO UPDATE SET name = EXCLUDED.name, updated_at" in query
        assert "created_by = EXCLUDED" not in query

    @pytest.mark.asyncio
    async def test_soft_delete_status(self, store, mock_db):
        mock_db.status = "UPDATE 0"
        assert await store.soft_delete("u1") is False

        mock_db.status = "UPDATE 1"
        assert await store.soft_delete("u1") is True

    @pytest.mark.asyncio
    async def test_insert_many_uses_transaction(self, store, mock_db):
        mock_db.row = {"id": "u1"}

        rows = await store.insert_many([{"name": "a"}, {"name": "b"}])

        assert len(rows) == 2
        assert len(mock_db.queries) == 2

    @pytest.mark.asyncio
    async def test_unknown_column_rejected(self, store, mock_db):
        with pytest.raises(ValueError):
            await store.insert({"name; DROP TABLE users": "x"})
        with pytest.raises(ValueError):
            await store.find(order_by="password")
        with pytest.raises(ValueError):
            await store.find([("name", "LIKE", "%")])

        assert mock_db.queries == []
