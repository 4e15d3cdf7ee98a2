"""
Inferenza dei tipi per colonne lette come testo.

Tre politiche, selezionabili per adapter tramite InferenceMode:

- STRICT: esamina tutte le righe; se anche un solo valore è testo la colonna
  intera diventa categoriale (valori originali, nessun valore perso).
- SAMPLING: deduce il tipo dalle prime `sample_rows` righe; i valori successivi
  non convertibili diventano null e il tipo dedotto resta.
- FAST: deduce il tipo dal campione; se una riga successiva non è compatibile
  con il tipo numerico dedotto, l'intera colonna scende a stringa e viene
  emessa una diagnostica con riga e colonna incriminate.

I numeri di riga nelle diagnostiche partono da 1 e non contano l'header.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .logger import LogManager

log = LogManager("inference").get_logger()

DEFAULT_SAMPLE_ROWS = 1000
MAX_DIAGNOSTICS_PER_COLUMN = 50

INTEGER_PATTERN = r"[+-]?\d+"
FLOAT_PATTERN = r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|[+-]?(?:inf|infinity|nan)"
BOOLEAN_TOKENS = {"true": True, "false": False}

PROMOTION_MESSAGE = "valore decimale dopo il campione; colonna promossa da integer a float"

LOGICAL_TYPES = ("integer", "float", "boolean", "datetime", "text", "categorical", "mixed")


class InferenceMode(str, Enum):
    STRICT = "strict"
    SAMPLING = "sampling"
    FAST = "fast"

    @classmethod
    def parse(cls, value: "InferenceMode | str") -> "InferenceMode":
        if isinstance(value, cls):
            return value
        token = str(value or "").strip().lower()
        for mode in cls:
            if mode.value == token:
                return mode
        raise ValueError(
            f"inference_mode non valido: {value!r} (attesi: {', '.join(m.value for m in cls)})"
        )


@dataclass(frozen=True)
class InferenceDiagnostic:
    row: int
    column: str
    value: str
    message: str

    def __str__(self) -> str:
        return f"riga {self.row}, colonna '{self.column}': {self.message} (valore={self.value!r})"


@dataclass
class ColumnInference:
    logical_type: str
    dtype: str
    rows: int
    rows_sampled: int
    nulls: int
    coerced_to_null: int = 0
    downgraded: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "logical_type": self.logical_type,
            "dtype": self.dtype,
            "rows": self.rows,
            "rows_sampled": self.rows_sampled,
            "nulls": self.nulls,
            "coerced_to_null": self.coerced_to_null,
            "downgraded": self.downgraded,
        }


@dataclass
class InferenceReport:
    mode: InferenceMode
    sample_rows: int
    columns: Dict[str, ColumnInference] = field(default_factory=dict)
    diagnostics: List[InferenceDiagnostic] = field(default_factory=list)

    @property
    def schema(self) -> Tuple[Tuple[str, str], ...]:
        return tuple((name, col.logical_type) for name, col in self.columns.items())

    def diagnostics_for(self, column: str) -> List[InferenceDiagnostic]:
        return [d for d in self.diagnostics if d.column == column]

    def to_dict(self) -> Dict[str, object]:
        return {
            "mode": self.mode.value,
            "sample_rows": self.sample_rows,
            "columns": {name: col.to_dict() for name, col in self.columns.items()},
            "diagnostics": [str(d) for d in self.diagnostics],
        }


@dataclass
class InferenceResult:
    df: pd.DataFrame
    report: InferenceReport


@dataclass
class _Masks:
    """Classificazione vettoriale dei valori testuali di una colonna."""

    raw: pd.Series
    stripped: pd.Series
    empty: pd.Series
    is_int: pd.Series
    is_float: pd.Series
    is_bool: pd.Series

    @classmethod
    def build(cls, series: pd.Series) -> "_Masks":
        raw = series.astype("string").fillna("")
        stripped = raw.str.strip()
        return cls(
            raw=raw,
            stripped=stripped,
            empty=(stripped == "").astype(bool),
            is_int=stripped.str.fullmatch(INTEGER_PATTERN).fillna(False).astype(bool),
            is_float=stripped.str.fullmatch(FLOAT_PATTERN, case=False).fillna(False).astype(bool),
            is_bool=stripped.str.lower().isin(list(BOOLEAN_TOKENS)).astype(bool),
        )

    def conforms(self, logical_type: str) -> pd.Series:
        """Maschera dei valori compatibili con il tipo (i vuoti sono sempre compatibili)."""
        if logical_type == "integer":
            return self.empty | self.is_int
        if logical_type == "float":
            return self.empty | self.is_float
        if logical_type == "boolean":
            return self.empty | self.is_bool
        return pd.Series(True, index=self.raw.index)


def _kind_of(masks: _Masks, upto: Optional[int] = None) -> str:
    """Tipo logico più stretto compatibile con i primi `upto` valori (tutti se None)."""
    empty = masks.empty if upto is None else masks.empty.iloc[:upto]
    if len(empty) == 0 or bool(empty.all()):
        return "text"
    for candidate in ("integer", "float", "boolean"):
        ok = masks.conforms(candidate)
        if upto is not None:
            ok = ok.iloc[:upto]
        if bool(ok.all()):
            return candidate
    return "text"


def _convert(masks: _Masks, logical_type: str) -> pd.Series:
    """Converte la colonna al tipo indicato; i valori non compatibili diventano null."""
    valid = masks.conforms(logical_type) & ~masks.empty
    if logical_type == "integer":
        values = masks.stripped.astype(object).where(valid, None)
        numeric = pd.to_numeric(values, errors="coerce")
        try:
            return numeric.astype("Int64")
        except (TypeError, ValueError, OverflowError):
            # interi oltre int64: ripiega su float
            return numeric.astype("Float64")
    if logical_type == "float":
        values = masks.stripped.astype(object).where(valid, None)
        return pd.to_numeric(values, errors="coerce").astype("Float64")
    if logical_type == "boolean":
        lowered = masks.stripped.str.lower().where(valid)
        return lowered.map(BOOLEAN_TOKENS).astype("boolean")
    if logical_type == "categorical":
        return masks.raw.mask(masks.empty).astype("category")
    return masks.raw.mask(masks.empty)


def _downgrade_message(kind: str) -> str:
    return f"valore incompatibile con il tipo {kind} dedotto dal campione; colonna convertita a text"


def _coercion_message(kind: str) -> str:
    return f"valore non convertibile a {kind}, sostituito con null"


def _diagnostics(
    masks: _Masks,
    column: str,
    bad: pd.Series,
    message: str,
    row_offset: int,
    limit: int,
) -> List[InferenceDiagnostic]:
    positions = np.flatnonzero(bad.to_numpy(dtype=bool))[:limit]
    return [
        InferenceDiagnostic(
            row=row_offset + int(pos) + 1,
            column=column,
            value=str(masks.raw.iloc[int(pos)]),
            message=message,
        )
        for pos in positions
    ]


def _infer_column(
    series: pd.Series,
    column: str,
    mode: InferenceMode,
    sample_rows: int,
    row_offset: int,
) -> Tuple[pd.Series, ColumnInference, List[InferenceDiagnostic]]:
    masks = _Masks.build(series)
    total = len(series)
    diagnostics: List[InferenceDiagnostic] = []
    coerced = 0
    downgraded = False

    if mode is InferenceMode.STRICT:
        kind = _kind_of(masks)
        sampled = total
        if kind == "text" and not bool(masks.empty.all()):
            kind = "categorical"
        converted = _convert(masks, kind)

    elif mode is InferenceMode.SAMPLING:
        sampled = min(sample_rows, total)
        kind = _kind_of(masks, upto=sample_rows)
        bad = ~masks.conforms(kind)
        coerced = int(bad.sum())
        if coerced:
            diagnostics = _diagnostics(
                masks,
                column,
                bad,
                _coercion_message(kind),
                row_offset,
                MAX_DIAGNOSTICS_PER_COLUMN,
            )
            log.debug("Colonna '%s': %d valori forzati a null (tipo %s)", column, coerced, kind)
        converted = _convert(masks, kind)

    else:
        sampled = min(sample_rows, total)
        kind = _kind_of(masks, upto=sample_rows)
        if kind == "integer" and not bool(masks.conforms("integer").all()):
            if bool(masks.conforms("float").all()):
                # int -> float: promozione senza perdita, come i lettori veloci
                diagnostics = _diagnostics(
                    masks,
                    column,
                    ~masks.conforms("integer"),
                    PROMOTION_MESSAGE,
                    row_offset,
                    1,
                )
                log.info("Colonna '%s' promossa da integer a float: %s", column, diagnostics[0])
                kind = "float"
        bad = ~masks.conforms(kind)
        if bool(bad.any()):
            first = _diagnostics(
                masks,
                column,
                bad,
                _downgrade_message(kind),
                row_offset,
                1,
            )
            diagnostics = diagnostics + first
            downgraded = True
            log.warning(
                "Colonna '%s' declassata da %s a text: %s",
                column,
                kind,
                first[0],
            )
            kind = "text"
        converted = _convert(masks, kind)

    info = ColumnInference(
        logical_type=kind,
        dtype=str(converted.dtype),
        rows=total,
        rows_sampled=sampled,
        nulls=int(converted.isna().sum()),
        coerced_to_null=coerced,
        downgraded=downgraded,
    )
    return converted, info, diagnostics


def infer_types(
    df_raw: pd.DataFrame,
    mode: InferenceMode | str = InferenceMode.SAMPLING,
    sample_rows: int = DEFAULT_SAMPLE_ROWS,
    row_offset: int = 0,
) -> InferenceResult:
    """
    Assegna i tipi a un DataFrame di stringhe secondo la politica richiesta.

    row_offset sposta la numerazione delle diagnostiche (usato dal ChunkedReader,
    dove ogni chunk riparte da zero).
    """
    mode = InferenceMode.parse(mode)
    if sample_rows < 1:
        raise ValueError(f"sample_rows deve essere >= 1 (ricevuto {sample_rows})")

    report = InferenceReport(mode=mode, sample_rows=sample_rows)
    out: Dict[str, pd.Series] = {}
    for column in df_raw.columns:
        converted, info, diagnostics = _infer_column(
            df_raw[column], str(column), mode, sample_rows, row_offset
        )
        out[column] = converted
        report.columns[str(column)] = info
        report.diagnostics.extend(diagnostics)

    df = pd.DataFrame(out, index=pd.RangeIndex(len(df_raw)), columns=list(df_raw.columns))
    return InferenceResult(df=df, report=report)


def coerce_to_schema(
    df_raw: pd.DataFrame,
    schema: Sequence[Tuple[str, str]],
    mode: InferenceMode | str = InferenceMode.SAMPLING,
    sample_rows: int = DEFAULT_SAMPLE_ROWS,
    row_offset: int = 0,
) -> InferenceResult:
    """
    Converte un DataFrame di stringhe ai tipi dichiarati, senza inferenza.

    Colonne non presenti nello schema restano stringhe. I valori non
    convertibili diventano null e producono una diagnostica con il numero
    di riga spostato di `row_offset`.
    """
    declared = dict(schema)
    report = InferenceReport(mode=InferenceMode.parse(mode), sample_rows=sample_rows)
    out: Dict[str, pd.Series] = {}
    for column in df_raw.columns:
        masks = _Masks.build(df_raw[column])
        kind = declared.get(str(column), "text")
        if kind in ("datetime", "mixed"):
            kind = "text"
        converted = _convert(masks, kind)
        bad = ~masks.conforms(kind)
        coerced = int(bad.sum())
        if coerced:
            report.diagnostics.extend(
                _diagnostics(masks, str(column), bad, _coercion_message(kind), row_offset, MAX_DIAGNOSTICS_PER_COLUMN)
            )
        out[column] = converted
        report.columns[str(column)] = ColumnInference(
            logical_type=kind,
            dtype=str(converted.dtype),
            rows=len(converted),
            rows_sampled=0,
            nulls=int(converted.isna().sum()),
            coerced_to_null=coerced,
        )
    df = pd.DataFrame(out, index=pd.RangeIndex(len(df_raw)), columns=list(df_raw.columns))
    return InferenceResult(df=df, report=report)


def apply_schema(df_raw: pd.DataFrame, schema: Sequence[Tuple[str, str]]) -> pd.DataFrame:
    """Come coerce_to_schema, restituendo solo la tabella."""
    return coerce_to_schema(df_raw, schema).df


CANDIDATE_TYPES = ("integer", "float", "boolean")
LOGICAL_DTYPES = {
    "integer": "Int64",
    "float": "Float64",
    "boolean": "boolean",
    "categorical": "category",
    "text": "string",
}


@dataclass
class _ColumnProfile:
    """Riepilogo incrementale di una colonna: prima riga non vuota e prime righe non conformi."""

    rows: int = 0
    empties: int = 0
    first_value_row: Optional[int] = None
    bad_counts: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(CANDIDATE_TYPES, 0))
    first_bad: Dict[str, Optional[InferenceDiagnostic]] = field(
        default_factory=lambda: dict.fromkeys(CANDIDATE_TYPES)
    )

    def fits(self, logical_type: str, upto: int) -> bool:
        first = self.first_bad[logical_type]
        return first is None or first.row > upto

    def kind_upto(self, upto: int) -> str:
        """Stesso criterio di _kind_of, sulle prime `upto` righe del file."""
        if upto == 0 or self.first_value_row is None or self.first_value_row > upto:
            return "text"
        for candidate in CANDIDATE_TYPES:
            if self.fits(candidate, upto):
                return candidate
        return "text"


class SchemaTracker:
    """
    Deduce i tipi di un file letto a blocchi con lo stesso esito della
    lettura completa.

    update() riceve i blocchi di stringhe in ordine, con la numerazione
    globale delle righe; report() applica la politica di inferenza ai
    riepiloghi accumulati. In modalità SAMPLING bastano le prime
    `sample_rows` righe (`complete` diventa True); STRICT e FAST richiedono
    l'intero file.
    """

    def __init__(
        self,
        columns: Sequence[str],
        mode: InferenceMode | str = InferenceMode.SAMPLING,
        sample_rows: int = DEFAULT_SAMPLE_ROWS,
    ) -> None:
        if sample_rows < 1:
            raise ValueError(f"sample_rows deve essere >= 1 (ricevuto {sample_rows})")
        self.mode = InferenceMode.parse(mode)
        self.sample_rows = sample_rows
        self.profiles: Dict[str, _ColumnProfile] = {str(c): _ColumnProfile() for c in columns}
        self.rows = 0

    @property
    def complete(self) -> bool:
        return self.mode is InferenceMode.SAMPLING and self.rows >= self.sample_rows

    def update(self, df_raw: pd.DataFrame) -> None:
        for column in df_raw.columns:
            profile = self.profiles[str(column)]
            masks = _Masks.build(df_raw[column])
            profile.rows += len(masks.raw)
            profile.empties += int(masks.empty.sum())
            if profile.first_value_row is None:
                filled = np.flatnonzero(~masks.empty.to_numpy(dtype=bool))
                if filled.size:
                    profile.first_value_row = self.rows + int(filled[0]) + 1
            for candidate in CANDIDATE_TYPES:
                bad = ~masks.conforms(candidate)
                count = int(bad.sum())
                if not count:
                    continue
                profile.bad_counts[candidate] += count
                if profile.first_bad[candidate] is None:
                    profile.first_bad[candidate] = _diagnostics(
                        masks, str(column), bad, "", self.rows, 1
                    )[0]
        self.rows += len(df_raw)

    def _resolve(self, column: str, profile: _ColumnProfile) -> Tuple[ColumnInference, List[InferenceDiagnostic]]:
        total = profile.rows
        diagnostics: List[InferenceDiagnostic] = []
        coerced = 0
        downgraded = False

        if self.mode is InferenceMode.STRICT:
            sampled = total
            kind = profile.kind_upto(total)
            if kind == "text" and profile.first_value_row is not None:
                kind = "categorical"
        else:
            sampled = min(self.sample_rows, total)
            kind = profile.kind_upto(sampled)

        if self.mode is InferenceMode.SAMPLING and kind in CANDIDATE_TYPES:
            coerced = profile.bad_counts[kind]
            if coerced:
                first = profile.first_bad[kind]
                diagnostics.append(
                    InferenceDiagnostic(first.row, column, first.value, _coercion_message(kind))
                )

        if self.mode is InferenceMode.FAST and kind in CANDIDATE_TYPES:
            if kind == "integer" and not profile.fits("integer", total) and profile.fits("float", total):
                first = profile.first_bad["integer"]
                diagnostics.append(InferenceDiagnostic(first.row, column, first.value, PROMOTION_MESSAGE))
                kind = "float"
            if not profile.fits(kind, total):
                first = profile.first_bad[kind]
                diagnostics.append(
                    InferenceDiagnostic(first.row, column, first.value, _downgrade_message(kind))
                )
                log.warning("Colonna '%s' declassata da %s a text: %s", column, kind, diagnostics[-1])
                downgraded = True
                kind = "text"

        info = ColumnInference(
            logical_type=kind,
            dtype=LOGICAL_DTYPES[kind],
            rows=total,
            rows_sampled=sampled,
            nulls=profile.empties + coerced,
            coerced_to_null=coerced,
            downgraded=downgraded,
        )
        return info, diagnostics

    def report(self) -> InferenceReport:
        report = InferenceReport(mode=self.mode, sample_rows=self.sample_rows)
        for column, profile in self.profiles.items():
            info, diagnostics = self._resolve(column, profile)
            report.columns[column] = info
            report.diagnostics.extend(diagnostics)
        return report


def logical_type(series: pd.Series) -> str:
    """Nome logico del tipo di una colonna già materializzata."""
    dtype = series.dtype
    if isinstance(dtype, pd.CategoricalDtype):
        return "categorical"
    if pd.api.types.is_bool_dtype(dtype):
        return "boolean"
    if pd.api.types.is_integer_dtype(dtype):
        return "integer"
    if pd.api.types.is_float_dtype(dtype):
        return "float"
    if pd.api.types.is_datetime64_any_dtype(dtype):
        return "datetime"
    if pd.api.types.is_string_dtype(dtype):
        kinds = {type(v) for v in series.dropna().tolist()}
        if kinds <= {str}:
            return "text"
    return "mixed"


def schema_of(df: pd.DataFrame) -> Tuple[Tuple[str, str], ...]:
    return tuple((str(name), logical_type(df[name])) for name in df.columns)
