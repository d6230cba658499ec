"""
Result cache port with in-memory and Parquet-file implementations.
"""

import copy
import hashlib
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from ..core.config import MetaAnalysisConfig
from ..io._io_utils import _read_metadata, _update_metadata
from ._results import MetaAnalysisResult

logger = logging.getLogger(__name__)

META_KEY_CACHE_KEY = "pymetapool.cache.key"


def table_fingerprint(table: pa.Table) -> str:
    """SHA-256 over the column names, types and row contents of a table."""
    if not isinstance(table, pa.Table):
        raise TypeError("Input 'table' must be a PyArrow Table.")
    digest = hashlib.sha256()
    header = [[f.name, str(f.type)] for f in table.schema]
    digest.update(json.dumps(header).encode("utf-8"))
    df = table.to_pandas()
    if len(df.columns) and len(df):
        digest.update(pd.util.hash_pandas_object(df, index=False).to_numpy().tobytes())
    return digest.hexdigest()


@dataclass(frozen=True)
class CacheKey:
    """
    Everything that determines a fitted result.

    Two keys are equal only if outcome, grouping, covariates, pooling, model
    input, engine, sampler settings and input data all match.
    """

    outcome: str
    pooling: str
    model_input: str
    adapter: str
    group_key: str
    group_order: tuple[str, ...]
    covariates: tuple[str, ...]
    num_iters: int
    num_chains: int
    data_fingerprint: str
    sampler: tuple[tuple[str, Any], ...] = field(default_factory=tuple)

    @classmethod
    def build(
        cls,
        data: pa.Table,
        outcome: str,
        pooling: str,
        model_input: str,
        adapter: str,
        config: MetaAnalysisConfig,
        group_key: str,
        covariates=(),
        group_order=(),
    ) -> "CacheKey":
        """Builds the key for fitting `data` with the given settings."""
        return cls(
            outcome=outcome,
            pooling=pooling,
            model_input=model_input,
            adapter=adapter,
            group_key=group_key,
            group_order=tuple(str(g) for g in (group_order or ())),
            covariates=tuple(covariates or ()),
            num_iters=config.num_iters,
            num_chains=config.num_chains,
            data_fingerprint=table_fingerprint(data),
            sampler=tuple(sorted(config.result_fields().items())),
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-native form; equal keys give equal dictionaries."""
        return {
            "outcome": self.outcome,
            "pooling": self.pooling,
            "model_input": self.model_input,
            "adapter": self.adapter,
            "group_key": self.group_key,
            "group_order": list(self.group_order),
            "covariates": list(self.covariates),
            "num_iters": self.num_iters,
            "num_chains": self.num_chains,
            "data_fingerprint": self.data_fingerprint,
            "sampler": {name: value for name, value in self.sampler},
        }

    @property
    def digest(self) -> str:
        payload = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResultCache(ABC):
    """Port for memoising expensive fits: key -> result."""

    @abstractmethod
    def get(self, key: CacheKey) -> MetaAnalysisResult | None:
        """Returns the stored result for exactly `key`, or None."""

    @abstractmethod
    def put(self, key: CacheKey, result: MetaAnalysisResult) -> None:
        """Stores `result` under `key`, replacing any previous entry."""


def _detached(result: MetaAnalysisResult) -> MetaAnalysisResult:
    # group_effects and the summary dataclasses are immutable
    return replace(
        result,
        flagged_groups=list(result.flagged_groups),
        diagnostics=copy.deepcopy(result.diagnostics),
    )


class InMemoryCache(ResultCache):
    """
    Dictionary-backed cache, mainly for tests.

    Entries are stored and served as copies, so callers editing a returned
    result (e.g. its diagnostics) never change the cached entry.
    """

    def __init__(self):
        self._entries: dict[str, tuple[dict[str, Any], MetaAnalysisResult]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key):
        entry = self._entries.get(key.digest)
        if entry is None or entry[0] != key.to_dict():
            self.misses += 1
            return None
        self.hits += 1
        return _detached(entry[1])

    def put(self, key, result):
        self._entries[key.digest] = (key.to_dict(), _detached(result))

    def __len__(self):
        return len(self._entries)


class ParquetCache(ResultCache):
    """
    One Parquet file per key in `directory`.

    Files are named ``{outcome}_{pooling}_{chains}ch_{iters}it_{digest}.parquet``
    and store the full key as JSON in the schema metadata. A file whose stored
    key differs from the requested one is never served.
    """

    def __init__(self, directory: str | os.PathLike):
        self.directory = os.fspath(directory)
        os.makedirs(self.directory, exist_ok=True)

    def path_for(self, key: CacheKey) -> str:
        outcome = re.sub(r"[^\w.-]+", "_", key.outcome)
        filename = (
            f"{outcome}_{key.pooling}_{key.num_chains}ch_{key.num_iters}it_{key.digest[:12]}.parquet"
        )
        return os.path.join(self.directory, filename)

    def get(self, key):
        path = self.path_for(key)
        if not os.path.exists(path):
            return None
        try:
            table = pq.read_table(path)
            stored = _read_metadata(table, META_KEY_CACHE_KEY)
            if stored != key.to_dict():
                logger.info(f"Cache key mismatch for '{path}'; recomputing.")
                return None
            return MetaAnalysisResult.from_table(table)
        except (OSError, ValueError, KeyError, pa.ArrowInvalid) as e:
            logger.warning(f"Unreadable cache file '{path}' ({e}); recomputing.")
            return None

    def put(self, key, result):
        table = _update_metadata(result.to_table(), {META_KEY_CACHE_KEY: key.to_dict()})
        pq.write_table(table, self.path_for(key))
