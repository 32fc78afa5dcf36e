from outreach_engine.database.init import MIGRATIONS_DIR, get_pending_migrations


def test_pending_migrations_sorted_and_filtered(tmp_path):
    for name in ("002_indexes.sql", "001_schema.sql", "010_later.sql", "notes.sql"):
        (tmp_path / name).write_text("SELECT 1;")

    pending = get_pending_migrations({"002"}, tmp_path)

    assert [version for version, _ in pending] == ["001", "010"]
    assert pending[0][1].name == "001_schema.sql"


def test_missing_directory(tmp_path):
    assert get_pending_migrations(set(), tmp_path / "nope") == []


def test_shipped_schema_migration():
    pending = get_pending_migrations(set())

    assert pending[0][0] == "001"
    sql = (MIGRATIONS_DIR / pending[0][1].name).read_text(encoding="utf-8")
    for table in (
        "contacts",
        "product_agents",
        "conversation_state",
        "scheduled_messages",
        "trigger_firings",
        "counter_resets",
    ):
        assert table in sql
    assert get_pending_migrations({"001"}) == pending[1:]
