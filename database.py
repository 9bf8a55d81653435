import sqlite3
import json
import logging
import threading
import pandas as pd
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Optional

from model import AnalysisResult, Severity

logger = logging.getLogger(__name__)


@dataclass
class HistoryConfig:
    """History storage configuration."""
    db_path: str = "data/analysis_history.db"
    storage_key: str = "carenest_analysis_history"


class AnalysisHistoryDB:
    """Persisted newest-first history of analysis results.

    The whole history is a single JSON array stored under one key, so the
    on-disk layout mirrors a key-value store. Growth is unbounded.
    """

    def __init__(self, config: Optional[HistoryConfig] = None):
        self.config = config or HistoryConfig()
        self.db_path = Path(self.config.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self.init_database()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly
        return sqlite3.connect(self.db_path, timeout=30, isolation_level=None)

    def init_database(self):
        """Create tables if they don't exist"""
        conn = self._connect()
        try:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS storage (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            ''')
        finally:
            conn.close()

    @staticmethod
    def _decode(stored: Optional[str]) -> List[Dict]:
        if not stored:
            return []
        items = json.loads(stored)
        if not isinstance(items, list):
            raise ValueError("stored history is not a list")
        return items

    def record(self, result: AnalysisResult) -> None:
        """Prepend a result to the stored history"""
        with self._write_lock:
            conn = self._connect()
            try:
                # Read, prepend and write back under one write lock
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT value FROM storage WHERE key = ?",
                        (self.config.storage_key,)
                    ).fetchone()
                    # Unreadable history raises here and is left untouched
                    existing = self._decode(row[0] if row else None)
                    updated = [result.to_dict()] + existing
                    conn.execute(
                        "INSERT OR REPLACE INTO storage (key, value) VALUES (?, ?)",
                        (self.config.storage_key, json.dumps(updated))
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()
        logger.info(f"Saved analysis result ({result.severity.value}) to history")

    def list(self) -> List[AnalysisResult]:
        """Get the full history, newest first"""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value FROM storage WHERE key = ?",
                (self.config.storage_key,)
            ).fetchone()
        finally:
            conn.close()

        try:
            items = self._decode(row[0] if row else None)
        except ValueError as e:
            logger.warning(f"Could not read analysis history: {e}")
            return []

        history = []
        for position, item in enumerate(items):
            try:
                history.append(AnalysisResult.from_dict(item))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed history entry {position}: {e!r}")
        return history

    def clear(self) -> None:
        """Delete the stored history (sign-out / guest session teardown)"""
        with self._write_lock:
            conn = self._connect()
            try:
                conn.execute("DELETE FROM storage WHERE key = ?", (self.config.storage_key,))
            finally:
                conn.close()
        logger.info("Analysis history cleared")

    def get_statistics(self) -> Dict:
        """Summary counts over the stored history"""
        history = self.list()
        by_severity = {severity.value: 0 for severity in Severity}
        for result in history:
            by_severity[result.severity.value] += 1

        completed = [r.confidence for r in history if not r.is_fallback]
        return {
            'total_analyses': len(history),
            'by_severity': by_severity,
            'avg_confidence': sum(completed) / len(completed) if completed else None,
            'first_analysis': history[-1].timestamp if history else None,
            'last_analysis': history[0].timestamp if history else None,
        }

    def to_dataframe(self) -> pd.DataFrame:
        """History as a table, newest first, numbered like the history page"""
        history = self.list()
        columns = ['test_number', 'timestamp', 'severity', 'color_detected',
                   'albumin_creatinine_ratio', 'confidence', 'diagnosis']
        rows = [
            {
                'test_number': len(history) - i,
                'timestamp': r.timestamp,
                'severity': r.severity.value,
                'color_detected': r.color_detected.value,
                'albumin_creatinine_ratio': r.albumin_creatinine_ratio,
                'confidence': r.confidence,
                'diagnosis': r.diagnosis,
            }
            for i, r in enumerate(history)
        ]
        return pd.DataFrame(rows, columns=columns)

    def export_to_csv(self, filename: str = None, export_dir: str = "exports") -> str:
        """Export the history to CSV and return the file path"""
        if not filename:
            filename = f"kidney_test_history_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"

        export_path = Path(export_dir) / filename
        export_path.parent.mkdir(parents=True, exist_ok=True)
        self.to_dataframe().to_csv(export_path, index=False)
        return str(export_path)
