"""
Unit tests for the analysis history store.
"""

import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from database import AnalysisHistoryDB, HistoryConfig
from model import Severity, fallback_result, interpret_prediction


@pytest.fixture
def history_config(tmp_path):
    return HistoryConfig(db_path=str(tmp_path / "data" / "history.db"))


@pytest.fixture
def history_db(history_config):
    return AnalysisHistoryDB(history_config)


def make_result(index: int, minutes: int = 0):
    """Result for the given class index at a fixed time."""
    raw = [0.1, 0.1, 0.1]
    raw[index] = 0.8
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return interpret_prediction(raw, now=now)


class TestHistoryStore:
    """Tests for record/list semantics."""

    def test_empty_history(self, history_db):
        assert history_db.list() == []

    def test_newest_first(self, history_db):
        """R1, R2, R3 recorded in order are listed as R3, R2, R1."""
        r1, r2, r3 = make_result(0, 1), make_result(1, 2), make_result(2, 3)
        for r in (r1, r2, r3):
            history_db.record(r)

        assert history_db.list() == [r3, r2, r1]

    def test_round_trip(self, history_db):
        """Stored results come back field for field."""
        result = make_result(1)
        history_db.record(result)
        loaded = history_db.list()[0]

        assert loaded == result
        assert loaded.timestamp == result.timestamp
        assert loaded.recommendations == result.recommendations

    def test_persists_across_instances(self, history_config):
        AnalysisHistoryDB(history_config).record(make_result(2))

        reopened = AnalysisHistoryDB(history_config)
        assert len(reopened.list()) == 1
        assert reopened.list()[0].severity == Severity.DANGER

    def test_stored_as_json_under_key(self, history_db, history_config):
        """The whole history is one JSON array with camelCase keys."""
        history_db.record(make_result(0))

        with sqlite3.connect(history_config.db_path) as conn:
            value = conn.execute(
                "SELECT value FROM storage WHERE key = ?",
                (history_config.storage_key,)
            ).fetchone()[0]

        items = json.loads(value)
        assert isinstance(items, list)
        assert items[0]['colorDetected'] == 'yellow'
        assert 'albuminCreatinineRatio' in items[0]

    def test_duplicates_kept(self, history_db):
        """Identical results are not deduplicated."""
        result = make_result(0)
        history_db.record(result)
        history_db.record(result)

        assert len(history_db.list()) == 2

    def test_concurrent_records_not_lost(self, history_db):
        """Parallel writers never drop each other's entries."""
        def writer(offset):
            for i in range(10):
                history_db.record(make_result(i % 3, offset * 100 + i))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(history_db.list()) == 40

    def test_separate_keys_isolated(self, tmp_path):
        db_path = str(tmp_path / "shared.db")
        first = AnalysisHistoryDB(HistoryConfig(db_path=db_path, storage_key="a"))
        second = AnalysisHistoryDB(HistoryConfig(db_path=db_path, storage_key="b"))
        first.record(make_result(0))

        assert second.list() == []

    def test_clear(self, history_db):
        history_db.record(make_result(0))
        history_db.clear()

        assert history_db.list() == []

    def test_unreadable_history_returns_empty(self, history_db, history_config):
        with sqlite3.connect(history_config.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO storage (key, value) VALUES (?, ?)",
                (history_config.storage_key, "{not json")
            )

        assert history_db.list() == []

    def test_record_keeps_unreadable_history(self, history_db, history_config):
        """A failed record leaves unparseable stored data as it was."""
        with sqlite3.connect(history_config.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO storage (key, value) VALUES (?, ?)",
                (history_config.storage_key, '{"truncated": ')
            )

        with pytest.raises(ValueError):
            history_db.record(make_result(0))

        with sqlite3.connect(history_config.db_path) as conn:
            value = conn.execute(
                "SELECT value FROM storage WHERE key = ?",
                (history_config.storage_key,)
            ).fetchone()[0]
        assert value == '{"truncated": '

    def test_malformed_entry_skipped(self, history_db, history_config):
        """One bad element does not hide the rest of the history."""
        first = make_result(0, 1)
        history_db.record(first)

        with sqlite3.connect(history_config.db_path) as conn:
            stored = conn.execute(
                "SELECT value FROM storage WHERE key = ?",
                (history_config.storage_key,)
            ).fetchone()[0]
            items = json.loads(stored) + [{"confidence": 0.5}, "junk"]
            conn.execute(
                "UPDATE storage SET value = ? WHERE key = ?",
                (json.dumps(items), history_config.storage_key)
            )

        second = make_result(2, 2)
        history_db.record(second)

        assert history_db.list() == [second, first]


class TestStatisticsAndExport:
    """Tests for summaries and CSV export."""

    def test_statistics(self, history_db):
        history_db.record(make_result(0, 1))
        history_db.record(make_result(1, 2))
        history_db.record(make_result(1, 3))
        history_db.record(fallback_result())

        stats = history_db.get_statistics()

        assert stats['total_analyses'] == 4
        assert stats['by_severity'] == {'normal': 2, 'high-risk': 2, 'danger': 0}
        assert stats['avg_confidence'] == pytest.approx(0.8)
        assert stats['first_analysis'] == make_result(0, 1).timestamp

    def test_statistics_empty(self, history_db):
        stats = history_db.get_statistics()

        assert stats['total_analyses'] == 0
        assert stats['avg_confidence'] is None
        assert stats['last_analysis'] is None

    def test_dataframe_numbering(self, history_db):
        history_db.record(make_result(0, 1))
        history_db.record(make_result(2, 2))

        df = history_db.to_dataframe()

        assert list(df['test_number']) == [2, 1]
        assert list(df['severity']) == ['danger', 'normal']

    def test_export_to_csv(self, history_db, tmp_path):
        history_db.record(make_result(1))

        path = history_db.export_to_csv("history.csv", export_dir=str(tmp_path / "exports"))
        df = pd.read_csv(path)

        assert len(df) == 1
        assert df.loc[0, 'color_detected'] == 'orange'
