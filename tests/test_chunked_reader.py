"""Test per iobench/chunked_reader.py."""
from __future__ import annotations

import builtins
from pathlib import Path

import pandas as pd
import pandas.testing as pdt
import pytest

from iobench.adapters import DelimitedTextAdapter, NativeBinaryAdapter
from iobench.chunked_reader import ChunkedReader, validate_chunk_size
from iobench.errors import InvalidChunkSizeError, UnreadableSourceError
from iobench.inference import schema_of


def _reader_for(path: Path) -> ChunkedReader:
    """Reader con lo schema dell'intero file, così i chunk hanno tipi coerenti."""
    full = DelimitedTextAdapter().read(path)
    return ChunkedReader(DelimitedTextAdapter(), schema=schema_of(full))


class _OpenSpy:
    """Registra i file aperti dal reader."""

    def __init__(self):
        self.handles = []

    def __call__(self, *args, **kwargs):
        fh = builtins.open(*args, **kwargs)
        self.handles.append(fh)
        return fh


class TestChunkSize:
    @pytest.mark.parametrize("size", [0, -1, -4096, True, 2.5, "64", None])
    def test_invalid_sizes(self, size):
        with pytest.raises(InvalidChunkSizeError):
            validate_chunk_size(size)

    def test_invalid_size_is_also_value_error(self, co2_csv: Path):
        with pytest.raises(ValueError):
            ChunkedReader().stream(co2_csv, 0)

    def test_valid_size(self):
        assert validate_chunk_size(1) == 1
        assert validate_chunk_size(8 * 1024 * 1024) == 8 * 1024 * 1024


class TestStream:
    @pytest.mark.parametrize("size", [1, 7, 64, 4096, 10**7])
    def test_concatenation_matches_whole_read(self, multiline_csv: Path, size):
        reader = _reader_for(multiline_csv)
        expected = DelimitedTextAdapter().read(multiline_csv)

        parts = list(reader.stream(multiline_csv, size))
        combined = pd.concat(parts, ignore_index=True)

        pdt.assert_frame_equal(combined, expected)

    @pytest.mark.parametrize("size", [128, 1000, 50_000])
    def test_co2_row_count_is_size_independent(self, co2_csv: Path, size):
        reader = _reader_for(co2_csv)
        frames = list(reader.stream(co2_csv, size))

        assert sum(len(f) for f in frames) == 468
        assert all(list(f.columns) == ["year", "month", "ppm"] for f in frames)

    def test_small_chunks_produce_several_frames(self, co2_csv: Path):
        frames = list(ChunkedReader().stream(co2_csv, 512))
        assert len(frames) > 1

    def test_quoted_newlines_stay_in_one_record(self, multiline_csv: Path):
        combined = ChunkedReader().read_all(multiline_csv, 16)
        assert len(combined) == 40
        assert combined["note"].iloc[0] == "line one 0\nline two, with comma"
        assert combined["note"].iloc[7] == 'quoted "word" 7'

    def test_header_only_file(self, tmp_path: Path):
        target = tmp_path / "header.csv"
        target.write_text("a,b\n", encoding="utf-8")
        combined = ChunkedReader().read_all(target, 4)
        assert list(combined.columns) == ["a", "b"]
        assert len(combined) == 0

    def test_file_without_trailing_newline(self, tmp_path: Path):
        target = tmp_path / "tail.csv"
        target.write_text("a,b\n1,x\n2,y", encoding="utf-8")
        combined = ChunkedReader().read_all(target, 3)
        assert combined["a"].tolist() == [1, 2]

    def test_missing_file_fails_before_iteration(self, tmp_path: Path):
        with pytest.raises(UnreadableSourceError):
            ChunkedReader().stream(tmp_path / "missing.csv", 64)

    def test_binary_adapter_is_rejected(self):
        with pytest.raises(ValueError):
            ChunkedReader(NativeBinaryAdapter())


class TestWholeFileTypes:
    """Senza schema esplicito i tipi valgono per l'intero file, non per il singolo chunk."""

    @pytest.mark.parametrize("size", [256, 4096, 10**6])
    @pytest.mark.parametrize("mode", ["sampling", "fast"])
    def test_default_stream_matches_whole_read(self, built_csv: Path, mode, size):
        adapter = DelimitedTextAdapter(inference_mode=mode)
        expected = adapter.read(built_csv)

        combined = pd.concat(list(ChunkedReader(adapter).stream(built_csv, size)), ignore_index=True)

        pdt.assert_frame_equal(combined, expected)

    def test_sampling_nulls_the_late_text_value(self, built_csv: Path):
        combined = pd.concat(list(ChunkedReader().stream(built_csv, 4096)), ignore_index=True)
        assert str(combined["built"].dtype) == "Int64"
        assert pd.isna(combined["built"].iloc[2840])

    def test_fast_keeps_the_late_text_value(self, built_csv: Path):
        reader = ChunkedReader(DelimitedTextAdapter(inference_mode="fast"))
        combined = pd.concat(list(reader.stream(built_csv, 4096)), ignore_index=True)
        assert combined["built"].iloc[2840] == "1721 (restored)"
        assert combined["built"].iloc[0] == "1601"

    @pytest.mark.parametrize("size", [512, 10**6])
    def test_strict_read_all_keeps_categories(self, built_csv: Path, size):
        adapter = DelimitedTextAdapter(inference_mode="strict")
        expected = adapter.read(built_csv)

        combined = ChunkedReader(adapter).read_all(built_csv, size)

        assert isinstance(combined["built"].dtype, pd.CategoricalDtype)
        pdt.assert_frame_equal(combined, expected)

    def test_infer_schema_uses_file_row_numbers(self, built_csv: Path):
        reader = ChunkedReader(DelimitedTextAdapter(inference_mode="fast"))
        report = reader.infer_schema(built_csv, 300)

        info = report.columns["built"]
        assert info.logical_type == "text"
        assert info.downgraded
        assert info.rows == 3000
        assert [d.row for d in report.diagnostics_for("built")] == [2841]
        assert dict(report.schema)["number"] == "integer"

    def test_infer_schema_sampling_stops_after_sample(self, built_csv: Path):
        reader = ChunkedReader(DelimitedTextAdapter(sample_rows=100))
        report = reader.infer_schema(built_csv, 256)

        info = report.columns["built"]
        assert info.logical_type == "integer"
        assert info.rows_sampled == 100
        assert 100 <= info.rows < 3000

    def test_fast_promotion_across_chunks(self, tmp_path: Path):
        target = tmp_path / "promo.csv"
        values = [str(i) for i in range(50)] + ["2.5"]
        target.write_text("v\n" + "\n".join(values) + "\n", encoding="utf-8")
        adapter = DelimitedTextAdapter(inference_mode="fast", sample_rows=10)

        report = ChunkedReader(adapter).infer_schema(target, 16)
        combined = ChunkedReader(adapter).read_all(target, 16)

        assert report.columns["v"].logical_type == "float"
        assert [d.row for d in report.diagnostics] == [51]
        assert str(combined["v"].dtype) == "Float64"
        assert combined["v"].iloc[50] == 2.5


class TestFileHandle:
    def test_stream_is_lazy(self, co2_csv: Path, monkeypatch):
        spy = _OpenSpy()
        monkeypatch.setattr("iobench.chunked_reader.open", spy, raising=False)

        frames = ChunkedReader().stream(co2_csv, 256)
        assert spy.handles == []

        next(frames)
        # deduzione dei tipi (già chiusa) più la lettura vera e propria
        assert len(spy.handles) == 2
        assert spy.handles[0].closed
        assert not spy.handles[1].closed
        frames.close()

    def test_handle_released_on_abandonment(self, co2_csv: Path, monkeypatch):
        spy = _OpenSpy()
        monkeypatch.setattr("iobench.chunked_reader.open", spy, raising=False)

        frames = ChunkedReader().stream(co2_csv, 256)
        next(frames)
        next(frames)
        assert not spy.handles[-1].closed

        frames.close()
        assert all(fh.closed for fh in spy.handles)

    def test_handle_released_after_full_read(self, co2_csv: Path, monkeypatch):
        spy = _OpenSpy()
        monkeypatch.setattr("iobench.chunked_reader.open", spy, raising=False)

        list(ChunkedReader().stream(co2_csv, 1024))
        assert all(fh.closed for fh in spy.handles)

    def test_handle_released_when_a_chunk_fails(self, tmp_path: Path, monkeypatch):
        target = tmp_path / "broken.csv"
        target.write_text("a,b\n1,2\n3,4,5,6\n", encoding="utf-8")
        spy = _OpenSpy()
        monkeypatch.setattr("iobench.chunked_reader.open", spy, raising=False)

        with pytest.raises(UnreadableSourceError):
            list(ChunkedReader().stream(target, 1024))
        assert all(fh.closed for fh in spy.handles)


class TestChunkRanges:
    @pytest.mark.parametrize("size", [1, 10, 100, 100_000])
    def test_ranges_are_disjoint_and_cover_the_file(self, multiline_csv: Path, size):
        chunks = list(ChunkedReader().iter_chunks(multiline_csv, size))
        data = multiline_csv.read_bytes()

        assert chunks[0].offset == 0
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.end == nxt.offset
        assert chunks[-1].end == len(data)

        for chunk in chunks:
            block = data[chunk.offset:chunk.end]
            # ogni chunk termina a fine record, mai dentro le virgolette
            assert block.endswith(b"\n")
            assert block.count(b'"') % 2 == 0

    def test_iter_chunks_validates_eagerly(self, co2_csv: Path):
        with pytest.raises(InvalidChunkSizeError):
            ChunkedReader().iter_chunks(co2_csv, -5)
