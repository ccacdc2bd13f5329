"""
Persistence handoff for analysis results.

The latest AnalysisResult lives in a single key-value slot that a separate
reporting stage reads. Persistence is a convenience cache, so every failure
is logged and absorbed rather than raised.

Environment Variables:
    SUPABASE_URL: Supabase project URL (e.g., https://xxx.supabase.co)
    SUPABASE_KEY: Supabase anon/service key
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import pyarrow as pa
import pyarrow.parquet as pq
from dotenv import load_dotenv

from .config import STORAGE_KEY, Settings
from .models import AnalysisResult

load_dotenv()

logger = logging.getLogger(__name__)

# Supabase client (lazy initialization)
_supabase_client = None


def get_supabase_client():
    """Get or create Supabase client."""
    global _supabase_client

    if _supabase_client is not None:
        return _supabase_client

    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_KEY")

    if not supabase_url or not supabase_key:
        logger.warning("Supabase credentials not configured. Analysis results will not be stored.")
        return None

    try:
        from supabase import create_client
        _supabase_client = create_client(supabase_url, supabase_key)
        logger.info("Supabase Storage client initialized")
        return _supabase_client
    except Exception as e:
        logger.error(f"Failed to initialize Supabase client: {e}")
        return None


# =============================================================================
# KEY-VALUE STORES
# =============================================================================

class KeyValueStore(ABC):
    """Durable string slots. All operations are best-effort."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> bool:
        pass

    @abstractmethod
    async def remove(self, key: str) -> bool:
        pass


class LocalKeyValueStore(KeyValueStore):
    """One UTF-8 file per key inside a directory."""

    def __init__(self, directory: str = "./storage"):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    async def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read {path}: {e}")
            return None

    async def set(self, key: str, value: str) -> bool:
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(value, encoding="utf-8")
            return True
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            return False

    async def remove(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.error(f"Failed to delete {path}: {e}")
            return False


class SupabaseKeyValueStore(KeyValueStore):
    """One JSON object per key in a Supabase Storage bucket."""

    def __init__(self, bucket: str = "analysis"):
        self.bucket = bucket

    @staticmethod
    def _object_name(key: str) -> str:
        return f"{key}.json"

    async def get(self, key: str) -> Optional[str]:
        client = get_supabase_client()
        if client is None:
            return None

        try:
            data = client.storage.from_(self.bucket).download(self._object_name(key))
            return data.decode("utf-8")
        except Exception as e:
            logger.info(f"No stored object for {key} in Supabase: {e}")
            return None

    async def set(self, key: str, value: str) -> bool:
        client = get_supabase_client()
        if client is None:
            return False

        try:
            client.storage.from_(self.bucket).upload(
                path=self._object_name(key),
                file=value.encode("utf-8"),
                file_options={"content-type": "application/json", "upsert": "true"},
            )
            logger.info(f"Uploaded {key} to Supabase Storage")
            return True
        except Exception as e:
            logger.error(f"Failed to upload {key} to Supabase: {e}")
            return False

    async def remove(self, key: str) -> bool:
        client = get_supabase_client()
        if client is None:
            return False

        try:
            client.storage.from_(self.bucket).remove([self._object_name(key)])
            logger.info(f"Deleted {key} from Supabase Storage")
            return True
        except Exception as e:
            logger.error(f"Failed to delete {key}: {e}")
            return False


# =============================================================================
# PARQUET EXPORT
# =============================================================================

def export_rows_parquet(result: AnalysisResult, output_dir: str) -> Path:
    """Write the row set as a Parquet table for the reporting stage."""
    rows = result.rows
    data = {
        "vendor": [r.vendor for r in rows],
        "description": [r.description for r in rows],
        "amount": [r.amount for r in rows],
        "date": [r.date for r in rows],
        "category": [r.category.value if r.category else None for r in rows],
        "confidence": [r.confidence.value if r.confidence else None for r in rows],
        "co2kg": [r.co2kg for r in rows],
        "direct_co2": [r.direct_co2 for r in rows],
        "analyzed_at": [result.analyzed_at] * len(rows),
    }

    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    parquet_path = output_path / "rows.parquet"
    pq.write_table(pa.table(data), parquet_path, compression="snappy")

    logger.info(f"Generated Parquet output: {parquet_path}")
    return parquet_path


# =============================================================================
# ANALYSIS STORE
# =============================================================================

class AnalysisStore:
    """Last-write-wins slot holding the most recent AnalysisResult."""

    def __init__(self, kv: KeyValueStore, key: str = STORAGE_KEY, export_dir: Optional[str] = None):
        self.kv = kv
        self.key = key
        self.export_dir = export_dir

    async def save(self, result: AnalysisResult) -> bool:
        """Overwrite the stored result. Never raises."""
        try:
            payload = json.dumps(result.to_dict())
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to serialize analysis result: {e}")
            return False

        saved = await self.kv.set(self.key, payload)

        if self.export_dir:
            try:
                export_rows_parquet(result, self.export_dir)
            except (pa.ArrowException, OSError) as e:
                logger.error(f"Failed to export rows to Parquet: {e}")

        return saved

    async def load(self) -> Optional[AnalysisResult]:
        """Restore the stored result; None when absent, unreadable or empty."""
        raw = await self.kv.get(self.key)
        if not raw:
            return None

        try:
            data = json.loads(raw)
            if not isinstance(data, dict) or not data.get("rows"):
                return None
            return AnalysisResult.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable stored analysis: {e}")
            return None

    async def reset(self) -> bool:
        return await self.kv.remove(self.key)


def build_store(settings: Settings) -> AnalysisStore:
    if settings.storage_backend == "supabase":
        kv = SupabaseKeyValueStore(settings.supabase_bucket)
    else:
        kv = LocalKeyValueStore(settings.storage_dir)
    return AnalysisStore(kv, export_dir=settings.export_dir)
