from __future__ import annotations

import math
import re
import shutil
import tempfile
import time
from collections import defaultdict
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .adapters import FormatAdapter, FormatTag, adapter_for_path
from .chunked_reader import ChunkedReader
from .config import BenchConfig
from .errors import InvalidTrialCountError, UnknownDatasetError
from .logger import LogManager
from .registry import DatasetDescriptor, DatasetRegistry

log = LogManager("benchmark").get_logger()


class Operation(str, Enum):
    WRITE = "write"
    READ = "read"


# write precede read: la lettura usa il file appena scritto
OPERATIONS: Tuple[Operation, ...] = (Operation.WRITE, Operation.READ)


@dataclass(frozen=True)
class MeasurementRecord:
    adapter_name: str
    operation: Operation
    trial_index: int
    elapsed_ms: float
    output_size_bytes: Optional[int] = None
    error: Optional[str] = None
    dataset: str = ""
    scale: int = 1
    matches_source: Optional[bool] = None

    @property
    def failed(self) -> bool:
        return self.error is not None or math.isnan(self.elapsed_ms)

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["operation"] = self.operation.value
        return data


@dataclass
class TimingStats:
    trials: int
    failures: int
    mean_ms: float
    min_ms: float


def timing_stats(
    records: Iterable[MeasurementRecord],
) -> Dict[Tuple[str, Operation], TimingStats]:
    """Media e minimo per (adapter, operazione), ignorando le prove fallite."""
    grouped: Dict[Tuple[str, Operation], List[MeasurementRecord]] = defaultdict(list)
    for rec in records:
        grouped[(rec.adapter_name, rec.operation)].append(rec)

    stats: Dict[Tuple[str, Operation], TimingStats] = {}
    for key, recs in grouped.items():
        ok = np.array([r.elapsed_ms for r in recs if not r.failed], dtype=float)
        stats[key] = TimingStats(
            trials=len(recs),
            failures=len(recs) - ok.size,
            mean_ms=float(ok.mean()) if ok.size else float("nan"),
            min_ms=float(ok.min()) if ok.size else float("nan"),
        )
    return stats


def tables_equivalent(expected: pd.DataFrame, actual: pd.DataFrame) -> bool:
    """
    Confronto per valore (non per dtype): stesse colonne, stesse righe,
    stessi valori resi come stringa, null allineati.
    """
    if list(map(str, expected.columns)) != list(map(str, actual.columns)):
        return False
    if len(expected) != len(actual):
        return False
    for exp_col, act_col in zip(expected.columns, actual.columns):
        left = expected[exp_col].reset_index(drop=True).astype("string")
        right = actual[act_col].reset_index(drop=True).astype("string")
        if not left.isna().equals(right.isna()):
            return False
        mask = ~left.isna()
        if not (left[mask] == right[mask]).all():
            return False
    return True


def _safe_token(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value).strip("_") or "x"


def validate_trials(trials: object) -> int:
    if isinstance(trials, bool) or not isinstance(trials, (int, np.integer)) or trials < 1:
        msg = f"trials deve essere un intero >= 1 (ricevuto {trials!r})"
        log.error(msg)
        raise InvalidTrialCountError(msg)
    return int(trials)


class BenchmarkEngine:
    """
    Esegue prove cronometrate di scrittura e lettura per ogni adapter.

    - Le prove sono sequenziali: una sola operazione alla volta.
    - Il cronometro avvolge solo la chiamata all'adapter (risoluzione del
      dataset, caricamento della sorgente e verifiche restano fuori).
    - Un errore in una prova produce un record con elapsed_ms=NaN e il
      motivo in `error`; le prove e gli adapter successivi proseguono.
    """

    def __init__(
        self,
        registry: Optional[DatasetRegistry] = None,
        config: Optional[BenchConfig] = None,
        work_dir: Optional[Union[str, Path]] = None,
        keep_files: Optional[bool] = None,
        verify: bool = True,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.registry = registry
        self.config = config or BenchConfig()
        chosen_dir = work_dir if work_dir is not None else self.config.work_dir
        self.work_dir = Path(chosen_dir) if chosen_dir else None
        self.keep_files = self.config.keep_files if keep_files is None else keep_files
        self.verify = verify
        self.timer = timer

    # ---------- sorgente ----------
    def resolve(self, dataset: Union[str, DatasetDescriptor]) -> DatasetDescriptor:
        if isinstance(dataset, DatasetDescriptor):
            return dataset
        if self.registry is None:
            msg = f"Dataset sconosciuto: {dataset} (nessun registry configurato)"
            log.error(msg)
            raise UnknownDatasetError(msg)
        return self.registry.resolve(dataset)

    def load_table(self, descriptor: DatasetDescriptor) -> pd.DataFrame:
        """Carica la sorgente; oltre chunk_threshold_bytes passa dal ChunkedReader."""
        tag = descriptor.resolved_format
        adapter = adapter_for_path(
            descriptor.source_path,
            tag,
            inference_mode=self.config.inference_mode,
            sample_rows=self.config.sample_rows,
        )
        if tag is FormatTag.DELIMITED_TEXT and descriptor.size_bytes > self.config.chunk_threshold_bytes:
            log.info(
                "Sorgente %s oltre soglia (%d > %d byte): lettura a chunk",
                descriptor.name,
                descriptor.size_bytes,
                self.config.chunk_threshold_bytes,
            )
            reader = ChunkedReader(adapter, schema=descriptor.schema or None)
            return reader.read_all(descriptor.source_path, self.config.chunk_size_bytes)
        return adapter.read(descriptor.source_path)

    # ---------- API ----------
    def run(
        self,
        dataset: Union[str, DatasetDescriptor],
        adapters: Sequence[FormatAdapter],
        trials: Optional[int] = None,
    ) -> List[MeasurementRecord]:
        """
        Restituisce esattamente trials * 2 * len(adapters) record
        (scritture prima delle letture, per ogni adapter nell'ordine dato).
        """
        trials = validate_trials(self.config.trials if trials is None else trials)
        descriptor = self.resolve(dataset)
        table = self.load_table(descriptor)
        return self._with_work_dir(
            lambda work_dir: self._run_table(descriptor.name, table, adapters, trials, work_dir)
        )

    def run_scaling(
        self,
        dataset: Union[str, DatasetDescriptor],
        adapters: Sequence[FormatAdapter],
        scale_factors: Sequence[int] = (1, 10, 100, 1000),
        trials: Optional[int] = None,
    ) -> List[MeasurementRecord]:
        """Ripete il benchmark sulla sorgente replicata n volte per ogni fattore."""
        trials = validate_trials(self.config.trials if trials is None else trials)
        factors = [int(f) for f in scale_factors]
        if not factors or any(f < 1 for f in factors):
            raise ValueError(f"I fattori di scala devono essere interi >= 1: {list(scale_factors)}")
        descriptor = self.resolve(dataset)
        table = self.load_table(descriptor)

        def _all(work_dir: Path) -> List[MeasurementRecord]:
            records: List[MeasurementRecord] = []
            for factor in factors:
                scaled = table if factor == 1 else pd.concat([table] * factor, ignore_index=True)
                log.info("Scala %dx: %d righe", factor, len(scaled))
                records.extend(
                    self._run_table(descriptor.name, scaled, adapters, trials, work_dir, scale=factor)
                )
            return records

        return self._with_work_dir(_all)

    # ---------- interni ----------
    def _with_work_dir(self, body: Callable[[Path], List[MeasurementRecord]]) -> List[MeasurementRecord]:
        if self.work_dir is not None:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            return body(self.work_dir)
        if self.keep_files:
            work_dir = Path(tempfile.mkdtemp(prefix="iobench_"))
            log.info("File del benchmark conservati in %s", work_dir)
            return body(work_dir)
        work_dir = Path(tempfile.mkdtemp(prefix="iobench_"))
        try:
            return body(work_dir)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def _target(self, work_dir: Path, dataset: str, position: int, adapter: FormatAdapter, scale: int) -> Path:
        stem = f"{_safe_token(dataset)}_{position:02d}_{_safe_token(adapter.name)}_x{scale}"
        return work_dir / f"{stem}{adapter.suffix}"

    def _timed(self, call: Callable[[], object]) -> Tuple[float, object, Optional[str]]:
        start = self.timer()
        try:
            result = call()
        except Exception as e:
            return float("nan"), None, f"{type(e).__name__}: {e}"
        return (self.timer() - start) * 1000.0, result, None

    def _run_table(
        self,
        dataset: str,
        table: pd.DataFrame,
        adapters: Sequence[FormatAdapter],
        trials: int,
        work_dir: Path,
        scale: int = 1,
    ) -> List[MeasurementRecord]:
        names = [a.name for a in adapters]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            log.warning("Adapter con nome duplicato (misure aggregate insieme): %s", ", ".join(duplicates))

        records: List[MeasurementRecord] = []
        for position, adapter in enumerate(adapters):
            target = self._target(work_dir, dataset, position, adapter, scale)
            for operation in OPERATIONS:
                for trial in range(trials):
                    records.append(
                        self._trial(dataset, table, adapter, operation, trial, target, scale)
                    )
            failed = sum(1 for r in records[-2 * trials:] if r.failed)
            if failed:
                log.warning("%s: %d/%d prove fallite", adapter.name, failed, 2 * trials)
            else:
                log.info("%s: %d prove completate (scala %dx)", adapter.name, 2 * trials, scale)
        return records

    def _trial(
        self,
        dataset: str,
        table: pd.DataFrame,
        adapter: FormatAdapter,
        operation: Operation,
        trial: int,
        target: Path,
        scale: int,
    ) -> MeasurementRecord:
        if operation is Operation.WRITE:
            if self.registry is not None:
                try:
                    self.registry.ensure_writable(target)
                except Exception as e:
                    return self._failure(dataset, adapter, operation, trial, scale, e)
            elapsed, size, error = self._timed(lambda: adapter.write(table, target))
            if error:
                log.warning("%s write #%d fallita: %s", adapter.name, trial, error)
            return MeasurementRecord(
                adapter_name=adapter.name,
                operation=operation,
                trial_index=trial,
                elapsed_ms=elapsed,
                output_size_bytes=size if error is None else None,
                error=error,
                dataset=dataset,
                scale=scale,
            )

        elapsed, loaded, error = self._timed(lambda: adapter.read(target))
        matches: Optional[bool] = None
        if error:
            log.warning("%s read #%d fallita: %s", adapter.name, trial, error)
        elif self.verify:
            matches = tables_equivalent(table, loaded)
            if not matches:
                log.warning("%s read #%d: contenuto diverso dalla sorgente", adapter.name, trial)
        return MeasurementRecord(
            adapter_name=adapter.name,
            operation=operation,
            trial_index=trial,
            elapsed_ms=elapsed,
            output_size_bytes=None,
            error=error,
            dataset=dataset,
            scale=scale,
            matches_source=matches,
        )

    @staticmethod
    def _failure(
        dataset: str,
        adapter: FormatAdapter,
        operation: Operation,
        trial: int,
        scale: int,
        exc: Exception,
    ) -> MeasurementRecord:
        error = f"{type(exc).__name__}: {exc}"
        log.warning("%s %s #%d non eseguita: %s", adapter.name, operation.value, trial, error)
        return MeasurementRecord(
            adapter_name=adapter.name,
            operation=operation,
            trial_index=trial,
            elapsed_ms=float("nan"),
            error=error,
            dataset=dataset,
            scale=scale,
        )
