from __future__ import annotations

import io
import os
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Type, Union

import pandas as pd
import pyarrow as pa
import pyarrow.feather as feather

from .errors import UnreadableSourceError, UnwritableTargetError
from .inference import (
    DEFAULT_SAMPLE_ROWS,
    ColumnInference,
    InferenceMode,
    InferenceReport,
    InferenceResult,
    coerce_to_schema,
    infer_types,
    logical_type,
)
from .logger import LogManager

log = LogManager("adapters").get_logger()

PathLike = Union[str, os.PathLike]


class FormatTag(str, Enum):
    DELIMITED_TEXT = "delimited_text"
    NATIVE_BINARY = "native_binary"
    COLUMNAR_BINARY = "columnar_binary"

    @classmethod
    def parse(cls, value: "FormatTag | str") -> "FormatTag":
        if isinstance(value, cls):
            return value
        token = str(value or "").strip().lower()
        for tag in cls:
            if tag.value == token:
                return tag
        if token in SUFFIX_ALIASES:
            return SUFFIX_ALIASES[token]
        raise ValueError(
            f"Formato non valido: {value!r} (attesi: {', '.join(t.value for t in cls)})"
        )


SUFFIX_ALIASES: Dict[str, FormatTag] = {
    "csv": FormatTag.DELIMITED_TEXT,
    "tsv": FormatTag.DELIMITED_TEXT,
    "txt": FormatTag.DELIMITED_TEXT,
    "pkl": FormatTag.NATIVE_BINARY,
    "pickle": FormatTag.NATIVE_BINARY,
    "feather": FormatTag.COLUMNAR_BINARY,
    "arrow": FormatTag.COLUMNAR_BINARY,
    "ipc": FormatTag.COLUMNAR_BINARY,
}


def infer_format(path: PathLike) -> FormatTag:
    """Deduce il formato dal suffisso del file. Il tag esplicito ha sempre la precedenza."""
    suffix = Path(path).suffix.lower().lstrip(".")
    tag = SUFFIX_ALIASES.get(suffix)
    if tag is None:
        raise ValueError(f"Impossibile dedurre il formato dal suffisso '{Path(path).suffix}': {path}")
    return tag


class FormatAdapter:
    """
    Interfaccia comune di lettura/scrittura.

    read(path, columns=None) -> DataFrame
    write(table, path) -> dimensione in byte del file scritto

    Gli adapter non mantengono stato tra le chiamate: la configurazione
    (inference_mode, sample_rows, ...) è fissata nel costruttore.
    """

    tag: FormatTag
    suffix: str = ""
    supports_chunking: bool = False

    def __init__(
        self,
        inference_mode: InferenceMode | str = InferenceMode.SAMPLING,
        sample_rows: int = DEFAULT_SAMPLE_ROWS,
        name: Optional[str] = None,
    ) -> None:
        if sample_rows < 1:
            raise ValueError(f"sample_rows deve essere >= 1 (ricevuto {sample_rows})")
        self.inference_mode = InferenceMode.parse(inference_mode)
        self.sample_rows = sample_rows
        self.name = name or self.tag.value

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, inference_mode={self.inference_mode.value!r})"

    # ---------- API ----------
    def read(
        self,
        path: PathLike,
        columns: Optional[Iterable[str]] = None,
        return_details: bool = False,
    ) -> pd.DataFrame | Tuple[pd.DataFrame, InferenceReport]:
        source = self._check_source(path)
        wanted = set(columns) if columns is not None else None
        result = self._read(source, wanted)
        log.debug(
            "%s: letto %s (righe=%d, colonne=%d)",
            self.name,
            source.name,
            len(result.df),
            len(result.df.columns),
        )
        if return_details:
            return result.df, result.report
        return result.df

    def write(self, table: pd.DataFrame, path: PathLike) -> int:
        if not isinstance(table, pd.DataFrame):
            raise TypeError(f"Attesa una pandas.DataFrame, ricevuto {type(table).__name__}")
        target = self._check_target(path)
        try:
            self._write(table, target)
        except UnwritableTargetError:
            raise
        except OSError as e:
            log.error("%s: scrittura fallita su %s: %s", self.name, target, e)
            raise UnwritableTargetError(f"Scrittura fallita su {target}: {e}") from e
        size = target.stat().st_size
        log.debug("%s: scritto %s (%d byte)", self.name, target.name, size)
        return size

    # ---------- hook per le varianti ----------
    def _read(self, source: Path, columns: Optional[set]) -> InferenceResult:
        raise NotImplementedError

    def _write(self, table: pd.DataFrame, target: Path) -> None:
        raise NotImplementedError

    def parse_records(
        self,
        data: bytes,
        header: Sequence[str],
        row_offset: int = 0,
        schema: Optional[Sequence[Tuple[str, str]]] = None,
    ) -> InferenceResult:
        raise NotImplementedError(f"{type(self).__name__} non supporta la lettura a chunk")

    # ---------- utility ----------
    def _check_source(self, path: PathLike) -> Path:
        source = Path(path)
        if not source.is_file():
            msg = f"File non trovato: {source}"
            log.error(msg)
            raise UnreadableSourceError(msg)
        return source

    def _check_target(self, path: PathLike) -> Path:
        target = Path(path)
        parent = target.parent if str(target.parent) else Path(".")
        if not parent.is_dir():
            msg = f"Cartella di destinazione inesistente: {parent}"
            log.error(msg)
            raise UnwritableTargetError(msg)
        if not os.access(parent, os.W_OK) or target.is_dir():
            msg = f"Destinazione non scrivibile: {target}"
            log.error(msg)
            raise UnwritableTargetError(msg)
        return target

    def _missing_columns(self, available: Sequence[str], columns: set, source: Path) -> None:
        missing = sorted(str(c) for c in columns - set(available))
        if missing:
            msg = f"Colonne non presenti in {source.name}: {', '.join(missing)}"
            log.error(msg)
            raise UnreadableSourceError(msg)

    def _stored_report(self, df: pd.DataFrame) -> InferenceReport:
        """Report per i formati auto-descrittivi: i tipi sono quelli salvati nel file."""
        report = InferenceReport(mode=self.inference_mode, sample_rows=self.sample_rows)
        for column in df.columns:
            series = df[column]
            report.columns[str(column)] = ColumnInference(
                logical_type=logical_type(series),
                dtype=str(series.dtype),
                rows=len(series),
                rows_sampled=0,
                nulls=int(series.isna().sum()),
            )
        return report


class DelimitedTextAdapter(FormatAdapter):
    """
    Testo delimitato (CSV/TSV) letto come stringhe e tipizzato con la
    politica di inferenza configurata.
    """

    tag = FormatTag.DELIMITED_TEXT
    suffix = ".csv"
    supports_chunking = True

    def __init__(
        self,
        inference_mode: InferenceMode | str = InferenceMode.SAMPLING,
        sample_rows: int = DEFAULT_SAMPLE_ROWS,
        name: Optional[str] = None,
        delimiter: str = ",",
        encoding: str = "utf-8",
    ) -> None:
        super().__init__(inference_mode=inference_mode, sample_rows=sample_rows, name=name)
        if not delimiter or len(delimiter) != 1:
            raise ValueError(f"Il delimitatore deve essere un singolo carattere: {delimiter!r}")
        self.delimiter = delimiter
        self.encoding = encoding

    def _read_kwargs(self) -> Dict[str, object]:
        return {
            "sep": self.delimiter,
            "encoding": self.encoding,
            "dtype": str,
            "keep_default_na": False,
            "na_filter": False,
            "engine": "c",
        }

    def read_header(self, path: PathLike) -> List[str]:
        source = self._check_source(path)
        try:
            header = pd.read_csv(source, nrows=0, **self._read_kwargs())
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError, ValueError) as e:
            log.error("%s: header non leggibile in %s: %s", self.name, source.name, e)
            raise UnreadableSourceError(f"Header non leggibile in {source}: {e}") from e
        return [str(c) for c in header.columns]

    def _read(self, source: Path, columns: Optional[set]) -> InferenceResult:
        usecols = None
        if columns is not None:
            header = self.read_header(source)
            self._missing_columns(header, columns, source)
            usecols = [c for c in header if c in columns]

        try:
            df_raw = pd.read_csv(source, usecols=usecols, **self._read_kwargs())
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError, ValueError) as e:
            log.error("%s: contenuto non delimitato in %s: %s", self.name, source.name, e)
            raise UnreadableSourceError(f"Contenuto non leggibile come testo delimitato: {source}: {e}") from e

        result = infer_types(df_raw, mode=self.inference_mode, sample_rows=self.sample_rows)
        for diag in result.report.diagnostics[:5]:
            log.debug("%s: %s", source.name, diag)
        return result

    def parse_raw(self, data: bytes, header: Sequence[str], row_offset: int = 0) -> pd.DataFrame:
        """Blocco di record completi (senza header) come DataFrame di stringhe."""
        names = list(header)
        if not data.strip():
            return pd.DataFrame({name: pd.Series([], dtype=object) for name in names})
        try:
            return pd.read_csv(
                io.BytesIO(data),
                header=None,
                names=names,
                **self._read_kwargs(),
            )
        except (pd.errors.ParserError, UnicodeDecodeError, ValueError) as e:
            log.error("%s: blocco non interpretabile (riga iniziale %d): %s", self.name, row_offset + 1, e)
            raise UnreadableSourceError(f"Blocco non interpretabile alla riga {row_offset + 1}: {e}") from e

    def parse_records(
        self,
        data: bytes,
        header: Sequence[str],
        row_offset: int = 0,
        schema: Optional[Sequence[Tuple[str, str]]] = None,
    ) -> InferenceResult:
        """
        Interpreta un blocco di record completi (senza header).

        Con `schema` i tipi sono imposti (chunk coerenti tra loro), altrimenti
        si applica l'inferenza dell'adapter al solo blocco.
        """
        df_raw = self.parse_raw(data, header, row_offset)
        if schema is not None:
            return coerce_to_schema(
                df_raw,
                schema,
                mode=self.inference_mode,
                sample_rows=self.sample_rows,
                row_offset=row_offset,
            )
        return infer_types(
            df_raw,
            mode=self.inference_mode,
            sample_rows=self.sample_rows,
            row_offset=row_offset,
        )

    def _write(self, table: pd.DataFrame, target: Path) -> None:
        table.to_csv(target, index=False, sep=self.delimiter, encoding=self.encoding)


class NativeBinaryAdapter(FormatAdapter):
    """
    Formato binario nativo di Python (pickle via pandas).

    Il pickle esegue codice in fase di caricamento: usare solo su file
    prodotti dal benchmark stesso.
    """

    tag = FormatTag.NATIVE_BINARY
    suffix = ".pkl"

    def _read(self, source: Path, columns: Optional[set]) -> InferenceResult:
        try:
            obj = pd.read_pickle(source, compression=None)
        except Exception as e:
            log.error("%s: %s non è un pickle valido: %s", self.name, source.name, e)
            raise UnreadableSourceError(f"Contenuto non leggibile come pickle: {source}: {e}") from e

        if not isinstance(obj, pd.DataFrame):
            msg = f"Il pickle {source.name} non contiene una DataFrame ({type(obj).__name__})"
            log.error(msg)
            raise UnreadableSourceError(msg)

        if columns is not None:
            self._missing_columns([str(c) for c in obj.columns], columns, source)
            obj = obj[[c for c in obj.columns if c in columns]]
        return InferenceResult(df=obj, report=self._stored_report(obj))

    def _write(self, table: pd.DataFrame, target: Path) -> None:
        table.to_pickle(target, compression=None)


class ColumnarBinaryAdapter(FormatAdapter):
    """Formato colonnare Arrow IPC (Feather v2) tramite pyarrow."""

    tag = FormatTag.COLUMNAR_BINARY
    suffix = ".feather"

    def __init__(
        self,
        inference_mode: InferenceMode | str = InferenceMode.SAMPLING,
        sample_rows: int = DEFAULT_SAMPLE_ROWS,
        name: Optional[str] = None,
        compression: Optional[str] = "uncompressed",
    ) -> None:
        super().__init__(inference_mode=inference_mode, sample_rows=sample_rows, name=name)
        self.compression = compression

    def _schema_names(self, source: Path) -> List[str]:
        try:
            with pa.OSFile(str(source), "rb") as f:
                return list(pa.ipc.open_file(f).schema.names)
        except (pa.ArrowException, OSError) as e:
            log.error("%s: %s non è un file Arrow IPC: %s", self.name, source.name, e)
            raise UnreadableSourceError(f"Contenuto non leggibile come Arrow IPC: {source}: {e}") from e

    def _read(self, source: Path, columns: Optional[set]) -> InferenceResult:
        selected = None
        if columns is not None:
            names = self._schema_names(source)
            self._missing_columns(names, columns, source)
            selected = [c for c in names if c in columns]

        try:
            table = feather.read_table(source, columns=selected, memory_map=False)
            df = table.to_pandas()
        except (pa.ArrowException, OSError, ValueError) as e:
            log.error("%s: %s non è un file Arrow IPC: %s", self.name, source.name, e)
            raise UnreadableSourceError(f"Contenuto non leggibile come Arrow IPC: {source}: {e}") from e

        df = df.reset_index(drop=True)
        return InferenceResult(df=df, report=self._stored_report(df))

    def _write(self, table: pd.DataFrame, target: Path) -> None:
        frame = table.reset_index(drop=True)
        frame.columns = [str(c) for c in frame.columns]
        try:
            feather.write_feather(frame, target, compression=self.compression)
        except (pa.ArrowException, TypeError, ValueError) as e:
            log.error("%s: tabella non serializzabile in Arrow: %s", self.name, e)
            raise UnwritableTargetError(f"Tabella non serializzabile in Arrow IPC ({target}): {e}") from e


ADAPTERS: Dict[FormatTag, Type[FormatAdapter]] = {
    FormatTag.DELIMITED_TEXT: DelimitedTextAdapter,
    FormatTag.NATIVE_BINARY: NativeBinaryAdapter,
    FormatTag.COLUMNAR_BINARY: ColumnarBinaryAdapter,
}


def get_adapter(tag: FormatTag | str, **options) -> FormatAdapter:
    """Istanzia l'adapter per il formato indicato (tag esplicito o alias di suffisso)."""
    return ADAPTERS[FormatTag.parse(tag)](**options)


def adapter_for_path(path: PathLike, tag: Optional[FormatTag | str] = None, **options) -> FormatAdapter:
    """Adapter per un file: il tag esplicito prevale sul suffisso."""
    resolved = FormatTag.parse(tag) if tag is not None else infer_format(path)
    return ADAPTERS[resolved](**options)
