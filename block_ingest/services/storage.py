"""
Parquet storage for block time and offline operator batches.

Layout:
    {data_dir}/block_times/chain={chain}/date={yyyy-mm-dd}/part-{unix_ms}.parquet
    {data_dir}/offline_operators/date={yyyy-mm-dd}/part-{unix_ms}.parquet
"""

import os
import threading
from glob import glob
from typing import List, Optional, Sequence

import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq
import structlog

from block_ingest.models import (
    BLOCK_TIME_SCHEMAS,
    OFFLINE_OPERATOR_SCHEMA,
    BlockRecord,
    ChainId,
    OfflineOperatorEvent,
)
from block_ingest.utils.exceptions import PersistenceError
from block_ingest.utils.timestamps import now_ms, partition_date

BLOCK_TIMES_DIR = "block_times"
OFFLINE_OPERATORS_DIR = "offline_operators"


class ParquetStorage:
    """Write partitioned Parquet batches and answer resume queries"""

    def __init__(self, data_dir: str, compression: str = "zstd"):
        self.data_dir = data_dir
        self.compression = compression
        self.logger = structlog.get_logger()
        self._write_lock = threading.Lock()
        os.makedirs(self.data_dir, exist_ok=True)

    def chain_dir(self, chain: ChainId) -> str:
        return os.path.join(self.data_dir, BLOCK_TIMES_DIR, f"chain={chain.value}")

    def offline_dir(self) -> str:
        return os.path.join(self.data_dir, OFFLINE_OPERATORS_DIR)

    def write_batch(self, chain: ChainId, rows: Sequence[BlockRecord]) -> Optional[str]:
        """
        Persist one chain-homogeneous batch as a single part file.

        Args:
            chain: Chain all rows belong to
            rows: Block records in ingestion order

        Returns:
            Path of the written file, or None for an empty batch

        Raises:
            ValueError: If rows from another chain are present
            PersistenceError: If the file could not be written
        """
        if not rows:
            return None
        foreign = {r.chain for r in rows if r.chain != chain}
        if foreign:
            raise ValueError(
                f"Batch for chain '{chain.value}' contains rows from {sorted(c.value for c in foreign)}"
            )

        table = pa.Table.from_pylist([r.to_row() for r in rows], schema=BLOCK_TIME_SCHEMAS[chain])
        out_dir = os.path.join(self.chain_dir(chain), f"date={partition_date(rows[0].timestamp_ms)}")
        return self._write_table(table, out_dir, chain=chain.value)

    def write_offline_batch(self, rows: Sequence[OfflineOperatorEvent]) -> Optional[str]:
        if not rows:
            return None
        table = pa.Table.from_pylist([r.to_row() for r in rows], schema=OFFLINE_OPERATOR_SCHEMA)
        out_dir = os.path.join(self.offline_dir(), f"date={partition_date(rows[0].timestamp_ms)}")
        return self._write_table(table, out_dir, dataset=OFFLINE_OPERATORS_DIR)

    def max_persisted_block_number(self, chain: ChainId) -> Optional[int]:
        return self._max_block_number(os.path.join(self.chain_dir(chain), "date=*", "part-*.parquet"))

    def max_persisted_offline_block_number(self) -> Optional[int]:
        return self._max_block_number(os.path.join(self.offline_dir(), "date=*", "part-*.parquet"))

    def list_parts(self, chain: Optional[ChainId] = None) -> List[str]:
        base = self.chain_dir(chain) if chain else self.offline_dir()
        return sorted(glob(os.path.join(base, "date=*", "part-*.parquet")))

    def _max_block_number(self, pattern: str) -> Optional[int]:
        max_block = None
        for path in glob(pattern):
            column = pq.read_table(path, columns=["block_number"]).column("block_number")
            if len(column) == 0:
                continue
            value = pc.max(column).as_py()
            if value is not None and (max_block is None or value > max_block):
                max_block = value
        return max_block

    def _write_table(self, table: pa.Table, out_dir: str, **context) -> str:
        with self._write_lock:
            try:
                os.makedirs(out_dir, exist_ok=True)
                stamp = now_ms()
                out_path = os.path.join(out_dir, f"part-{stamp}.parquet")
                while os.path.exists(out_path):
                    stamp += 1
                    out_path = os.path.join(out_dir, f"part-{stamp}.parquet")

                tmp_path = os.path.join(out_dir, f".part-{stamp}.parquet.tmp")
                pq.write_table(table, tmp_path, compression=self.compression)
                os.replace(tmp_path, out_path)
            except (OSError, pa.ArrowException) as e:
                raise PersistenceError(
                    f"Failed to write batch to {out_dir}: {e}",
                    rows=table.num_rows,
                    path=out_dir,
                ) from e

        self.logger.debug("Wrote batch file", path=out_path, rows=table.num_rows, **context)
        return out_path
