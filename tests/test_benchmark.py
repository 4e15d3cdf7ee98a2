"""Test per iobench/benchmark.py."""
from __future__ import annotations

import itertools
import math
import tempfile
from pathlib import Path

import pandas as pd
import pandas.testing as pdt
import pytest

from iobench.adapters import (
    ColumnarBinaryAdapter,
    DelimitedTextAdapter,
    NativeBinaryAdapter,
)
from iobench.benchmark import (
    BenchmarkEngine,
    MeasurementRecord,
    Operation,
    tables_equivalent,
    timing_stats,
)
from iobench.config import BenchConfig
from iobench.errors import InvalidTrialCountError, UnknownDatasetError
from iobench.registry import DatasetDescriptor, DatasetRegistry
from iobench.report_manager import ReportManager
from tests.fixtures.datasets import co2_table


class BrokenAdapter(NativeBinaryAdapter):
    """Adapter che fallisce sempre in scrittura."""

    def _write(self, table, target):
        raise RuntimeError("disk on fire")


def _ticking_timer(step: float = 1.0):
    ticks = itertools.count()
    return lambda: next(ticks) * step


@pytest.fixture
def registry(co2_csv: Path) -> DatasetRegistry:
    reg = DatasetRegistry()
    reg.describe("co2", co2_csv)
    return reg


@pytest.fixture
def engine(registry, tmp_path: Path) -> BenchmarkEngine:
    return BenchmarkEngine(registry=registry, work_dir=tmp_path / "work")


def _all_adapters():
    return [DelimitedTextAdapter(), NativeBinaryAdapter(), ColumnarBinaryAdapter()]


class TestRecordShape:
    @pytest.mark.parametrize("trials", [1, 3])
    def test_record_count_and_order(self, engine, trials):
        adapters = _all_adapters()
        records = engine.run("co2", adapters, trials=trials)

        assert len(records) == trials * 2 * len(adapters)
        for i, adapter in enumerate(adapters):
            block = records[i * 2 * trials:(i + 1) * 2 * trials]
            assert {r.adapter_name for r in block} == {adapter.name}
            assert [r.operation for r in block] == [Operation.WRITE] * trials + [Operation.READ] * trials
            assert [r.trial_index for r in block] == list(range(trials)) * 2

    def test_successful_trials(self, engine):
        records = engine.run("co2", _all_adapters(), trials=2)

        assert not any(r.failed for r in records)
        assert all(r.elapsed_ms >= 0 for r in records)
        assert all(r.dataset == "co2" and r.scale == 1 for r in records)
        writes = [r for r in records if r.operation is Operation.WRITE]
        reads = [r for r in records if r.operation is Operation.READ]
        assert all(r.output_size_bytes and r.output_size_bytes > 0 for r in writes)
        assert all(r.output_size_bytes is None for r in reads)
        assert all(r.matches_source is True for r in reads)

    def test_default_trials_from_config(self, registry, tmp_path: Path):
        engine = BenchmarkEngine(registry=registry, config=BenchConfig(trials=2), work_dir=tmp_path)
        records = engine.run("co2", [NativeBinaryAdapter()])
        assert len(records) == 4

    def test_empty_adapter_list(self, engine):
        assert engine.run("co2", [], trials=2) == []


class TestFailureIsolation:
    def test_failing_adapter_still_produces_all_records(self, engine):
        adapters = [BrokenAdapter(name="broken"), NativeBinaryAdapter()]
        records = engine.run("co2", adapters, trials=2)

        assert len(records) == 2 * 2 * 2
        broken = [r for r in records if r.adapter_name == "broken"]
        healthy = [r for r in records if r.adapter_name == "native_binary"]

        assert all(r.failed and math.isnan(r.elapsed_ms) for r in broken)
        assert "disk on fire" in broken[0].error
        # le letture falliscono perché il file non è mai stato scritto
        assert all("UnreadableSourceError" in r.error for r in broken if r.operation is Operation.READ)
        assert not any(r.failed for r in healthy)

    def test_every_adapter_failing(self, engine):
        adapters = [BrokenAdapter(name="a"), BrokenAdapter(name="b")]
        records = engine.run("co2", adapters, trials=3)
        assert len(records) == 3 * 2 * 2
        assert all(r.failed for r in records)

    def test_columnar_failure_on_mixed_column(self, tmp_path: Path):
        table = pd.DataFrame({"m": pd.Series([1, "a", 2.5], dtype=object)})
        source = tmp_path / "mixed.pkl"
        table.to_pickle(source)
        reg = DatasetRegistry()
        reg.describe("mixed", source)
        engine = BenchmarkEngine(registry=reg, work_dir=tmp_path / "work")

        records = engine.run("mixed", [ColumnarBinaryAdapter(), NativeBinaryAdapter()], trials=1)

        columnar = records[:2]
        assert all(r.failed for r in columnar)
        assert "UnwritableTargetError" in columnar[0].error
        assert not any(r.failed for r in records[2:])


class TestValidation:
    @pytest.mark.parametrize("trials", [0, -2, True, 1.5])
    def test_invalid_trials(self, engine, trials):
        with pytest.raises(InvalidTrialCountError):
            engine.run("co2", _all_adapters(), trials=trials)

    def test_unknown_dataset(self, engine):
        with pytest.raises(UnknownDatasetError):
            engine.run("missing", _all_adapters(), trials=1)

    def test_unknown_dataset_without_registry(self, tmp_path: Path):
        with pytest.raises(UnknownDatasetError):
            BenchmarkEngine(work_dir=tmp_path).run("co2", [NativeBinaryAdapter()], trials=1)

    def test_descriptor_without_registry(self, registry, tmp_path: Path):
        descriptor = registry.resolve("co2")
        records = BenchmarkEngine(work_dir=tmp_path).run(descriptor, [NativeBinaryAdapter()], trials=1)
        assert len(records) == 2


class TestTiming:
    def test_timer_wraps_only_the_adapter_call(self, registry, tmp_path: Path):
        engine = BenchmarkEngine(registry=registry, work_dir=tmp_path, timer=_ticking_timer(0.5))
        records = engine.run("co2", [NativeBinaryAdapter(), DelimitedTextAdapter()], trials=2)

        # due letture del timer per prova: inizio e fine
        assert [r.elapsed_ms for r in records] == [500.0] * 8

    def test_timing_stats(self):
        records = [
            MeasurementRecord("a", Operation.WRITE, 0, 10.0, 100),
            MeasurementRecord("a", Operation.WRITE, 1, 30.0, 100),
            MeasurementRecord("a", Operation.WRITE, 2, float("nan"), error="boom"),
        ]
        stats = timing_stats(records)[("a", Operation.WRITE)]
        assert stats.trials == 3
        assert stats.failures == 1
        assert stats.mean_ms == 20.0
        assert stats.min_ms == 10.0


class TestRegistryGuard:
    def test_write_over_registered_source_is_refused(self, registry, tmp_path: Path):
        work = tmp_path / "work"
        work.mkdir()
        protected = work / "co2_00_native_binary_x1.pkl"
        co2_table().to_pickle(protected)
        original = protected.read_bytes()
        registry.describe("protected", protected)

        engine = BenchmarkEngine(registry=registry, work_dir=work)
        records = engine.run("co2", [NativeBinaryAdapter()], trials=2)

        writes = [r for r in records if r.operation is Operation.WRITE]
        assert all(r.failed and "UnwritableTargetError" in r.error for r in writes)
        assert protected.read_bytes() == original


class TestWorkDir:
    def test_temporary_dir_is_removed(self, registry, tmp_path: Path, monkeypatch):
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        monkeypatch.setattr(tempfile, "tempdir", str(scratch))

        BenchmarkEngine(registry=registry).run("co2", _all_adapters(), trials=1)
        assert list(scratch.iterdir()) == []

    def test_keep_files(self, registry, tmp_path: Path, monkeypatch):
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        monkeypatch.setattr(tempfile, "tempdir", str(scratch))

        BenchmarkEngine(registry=registry, keep_files=True).run("co2", _all_adapters(), trials=1)
        (kept,) = list(scratch.iterdir())
        assert sorted(p.suffix for p in kept.iterdir()) == [".csv", ".feather", ".pkl"]

    def test_same_tag_adapters_do_not_share_files(self, engine, tmp_path: Path):
        adapters = [
            DelimitedTextAdapter(name="csv-a"),
            DelimitedTextAdapter(name="csv-b", delimiter=";"),
        ]
        records = engine.run("co2", adapters, trials=1)
        assert all(r.matches_source for r in records if r.operation is Operation.READ)
        assert len(list((tmp_path / "work").iterdir())) == 2


class TestSourceLoading:
    def test_large_source_goes_through_chunks(self, registry, co2_csv: Path, tmp_path: Path):
        cfg = BenchConfig(chunk_threshold_bytes=1, chunk_size_bytes=256)
        engine = BenchmarkEngine(registry=registry, config=cfg, work_dir=tmp_path)

        chunked = engine.load_table(registry.resolve("co2"))
        pdt.assert_frame_equal(chunked, DelimitedTextAdapter().read(co2_csv))

    def test_strict_chunked_load_keeps_categories(self, built_csv: Path, tmp_path: Path):
        reg = DatasetRegistry()
        descriptor = reg.describe("voyages", built_csv, inference_mode="strict")
        cfg = BenchConfig(inference_mode="strict", chunk_threshold_bytes=1, chunk_size_bytes=4096)
        engine = BenchmarkEngine(registry=reg, config=cfg, work_dir=tmp_path)

        chunked = engine.load_table(descriptor)

        assert isinstance(chunked["built"].dtype, pd.CategoricalDtype)
        pdt.assert_frame_equal(chunked, DelimitedTextAdapter(inference_mode="strict").read(built_csv))

    def test_chunked_load_without_schema(self, built_csv: Path, tmp_path: Path):
        descriptor = DatasetDescriptor(
            name="voyages",
            source_path=str(built_csv),
            size_bytes=built_csv.stat().st_size,
        )
        cfg = BenchConfig(chunk_threshold_bytes=1, chunk_size_bytes=512)
        engine = BenchmarkEngine(config=cfg, work_dir=tmp_path)

        chunked = engine.load_table(descriptor)
        pdt.assert_frame_equal(chunked, DelimitedTextAdapter().read(built_csv))

    def test_scaling(self, engine):
        records = engine.run_scaling("co2", [NativeBinaryAdapter()], scale_factors=(1, 10), trials=1)

        assert len(records) == 2 * 1 * 2 * 1
        assert [r.scale for r in records] == [1, 1, 10, 10]
        sizes = {r.scale: r.output_size_bytes for r in records if r.operation is Operation.WRITE}
        assert sizes[10] > sizes[1]
        assert all(r.matches_source for r in records if r.operation is Operation.READ)

    @pytest.mark.parametrize("factors", [(), (0,), (1, -10)])
    def test_invalid_scale_factors(self, engine, factors):
        with pytest.raises(ValueError):
            engine.run_scaling("co2", [NativeBinaryAdapter()], scale_factors=factors, trials=1)


class TestEquivalence:
    def test_same_values_different_dtypes(self):
        left = pd.DataFrame({"a": pd.array([1, 2, None], dtype="Int64")})
        right = pd.DataFrame({"a": pd.Series(["1", "2", None], dtype=object)})
        assert tables_equivalent(left, right)

    def test_different_values(self):
        left = pd.DataFrame({"a": [1, 2]})
        assert not tables_equivalent(left, pd.DataFrame({"a": [1, 3]}))
        assert not tables_equivalent(left, pd.DataFrame({"b": [1, 2]}))
        assert not tables_equivalent(left, pd.DataFrame({"a": [1]}))


class _RowClock:
    """Cronometro finto: avanza solo quando un adapter elabora righe."""

    def __init__(self, seconds_per_row: float = 1e-6):
        self.now = 0.0
        self.seconds_per_row = seconds_per_row

    def __call__(self) -> float:
        return self.now

    def charge(self, rows: int) -> None:
        self.now += rows * self.seconds_per_row


def _metered(adapter_cls, clock: _RowClock):
    class Metered(adapter_cls):
        def write(self, table, path):
            size = super().write(table, path)
            clock.charge(len(table))
            return size

        def read(self, path, columns=None, return_details=False):
            result = super().read(path, columns=columns, return_details=return_details)
            clock.charge(len(result[0] if return_details else result))
            return result

    return Metered()


class TestScalingScenario:
    """co2 replicato 1x, 10x, 100x, 1000x: tempi e dimensioni non decrescono."""

    FACTORS = (1, 10, 100, 1000)

    def test_elapsed_and_size_never_decrease(self, registry, tmp_path: Path):
        clock = _RowClock()
        adapters = [
            _metered(DelimitedTextAdapter, clock),
            _metered(NativeBinaryAdapter, clock),
            _metered(ColumnarBinaryAdapter, clock),
        ]
        engine = BenchmarkEngine(registry=registry, work_dir=tmp_path / "work", verify=False, timer=clock)

        records = engine.run_scaling("co2", adapters, scale_factors=self.FACTORS, trials=1)

        assert len(records) == len(self.FACTORS) * 1 * 2 * len(adapters)
        assert not any(r.failed for r in records)

        wide = ReportManager().summarize_scaling(records)
        columns = [f"x{f}" for f in self.FACTORS]
        assert len(wide) == 2 * len(adapters)
        for _, row in wide.iterrows():
            means = [row[c] for c in columns]
            assert means == sorted(means), (row["adapter_name"], row["operation"], means)
            assert means[-1] == pytest.approx(468 * 1000 * 1e-3)

        for adapter in adapters:
            sizes = [
                r.output_size_bytes
                for r in records
                if r.adapter_name == adapter.name and r.operation is Operation.WRITE
            ]
            assert sizes == sorted(sizes)
            assert sizes[-1] > sizes[0]
