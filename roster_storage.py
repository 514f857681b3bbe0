import os
import csv
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pymongo import MongoClient, ASCENDING, UpdateOne

from roster_models import CSV_FIELDNAMES, MemberRecord, RosterSnapshot

logger = logging.getLogger(__name__)


# ===============================================
# ||            CSV MANAGER CLASS              ||
# ===============================================
class CSVManager:
    """Appends roster snapshots to a single CSV file.

    The header is written only when the file is new or empty, so repeated runs
    against the same path produce one continuous table.
    """
    def __init__(self, path):
        self.path = Path(path)
        self.file_handle = None
        self.writer = None

    @classmethod
    def temporary(cls, directory: Optional[str] = None) -> "CSVManager":
        """Creates an empty ``*.csv`` file in the temp directory and writes there."""
        logger.info("Creating new temporary file")
        fd, name = tempfile.mkstemp(suffix=".csv", dir=directory)
        os.close(fd)
        logger.info(f"Path to output file: {name}")
        return cls(name)

    def _get_writer(self) -> csv.DictWriter:
        if self.writer is None:
            is_new_file = not self.path.exists() or self.path.stat().st_size == 0
            if is_new_file:
                logger.info(f"Creating new file {self.path}")
                self.path.parent.mkdir(parents=True, exist_ok=True)
            else:
                logger.info(f"Opening existing file {self.path}")
            self.file_handle = open(self.path, 'a', newline='', encoding='utf-8')
            self.writer = csv.DictWriter(self.file_handle, fieldnames=CSV_FIELDNAMES)
            if is_new_file:
                self.writer.writeheader()
        return self.writer

    def write_snapshot(self, snapshot: RosterSnapshot) -> int:
        writer = self._get_writer()
        records = sorted(snapshot.values(), key=lambda record: record.identity.casefold())
        writer.writerows(record.to_row() for record in records)
        self.file_handle.flush()
        logger.info(f"Wrote {len(records)} rows to {self.path}")
        return len(records)

    def close(self):
        if self.file_handle:
            self.file_handle.close()
        self.file_handle = None
        self.writer = None


def read_records(path) -> List[MemberRecord]:
    """Reads back every row written by :class:`CSVManager`."""
    with open(path, 'r', newline='', encoding='utf-8') as f:
        return [MemberRecord.from_row(row) for row in csv.DictReader(f)]


# ===============================================
# ||          DATABASE MANAGER CLASS           ||
# ===============================================
class MongoDBManager:
    """Keeps the latest presence of every member in a MongoDB collection.

    Documents are keyed by ``(username, server)`` so several servers can share
    one collection.
    """
    def __init__(self, uri: str, server: str, db_name: str = 'discord_roster',
                 collection_name: str = 'members', client: Optional[MongoClient] = None):
        try:
            self.client = client if client is not None else MongoClient(uri)
            self.db = self.client[db_name]
            logger.info("Successfully connected to MongoDB.")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise
        self.server = server
        self.collection_name = collection_name

    def get_collection(self, collection_name: str):
        """Get a collection and ensure indexes are created."""
        collection = self.db[collection_name]
        collection.create_index([('username', ASCENDING), ('server', ASCENDING)], unique=True)
        collection.create_index([('scraped_at', ASCENDING)])
        return collection

    def batch_upsert(self, collection, documents: List[Dict]) -> int:
        """
        Upserts a batch of member documents.
        Existing members are updated in place, new ones are inserted.
        """
        if not documents:
            return 0

        operations = [
            UpdateOne({'username': doc['username'], 'server': doc['server']}, {'$set': doc}, upsert=True)
            for doc in documents
        ]
        result = collection.bulk_write(operations, ordered=False)
        logger.info(f"Upserted {result.upserted_count} and modified {result.modified_count} documents.")
        return result.upserted_count + result.modified_count

    def write_snapshot(self, snapshot: RosterSnapshot) -> int:
        scraped_at = datetime.now(timezone.utc).isoformat()
        documents = [
            {**record.to_row(), 'server': self.server, 'scraped_at': scraped_at}
            for record in snapshot.values()
        ]
        if not documents:
            logger.info("Snapshot is empty, nothing to upsert.")
            return 0
        return self.batch_upsert(self.get_collection(self.collection_name), documents)

    def close(self):
        self.client.close()
