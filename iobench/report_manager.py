from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .benchmark import MeasurementRecord
from .config import BenchConfig
from .errors import EmptyRecordSetError
from .logger import LogManager


log = LogManager("report").get_logger()

SUMMARY_COLUMNS = [
    "adapter_name",
    "operation",
    "trials",
    "failures",
    "mean_elapsed_ms",
    "min_elapsed_ms",
    "relative_to_fastest",
    "mean_size_bytes",
    "mismatches",
]


@dataclass
class ReportFormats:
    csv: bool = True
    md: bool = False
    html: bool = False

    @classmethod
    def from_token(cls, token: str) -> "ReportFormats":
        t = (token or "csv").strip().lower()
        if t == "csv":
            return cls(csv=True, md=False, html=False)
        if t == "csv+md":
            return cls(csv=True, md=True, html=False)
        if t == "csv+html":
            return cls(csv=True, md=False, html=True)
        if t == "csv+md+html":
            return cls(csv=True, md=True, html=True)
        # default
        return cls(csv=True, md=False, html=False)


def _relative(mean: float, fastest: float) -> float:
    if np.isnan(mean) or np.isnan(fastest):
        return float("nan")
    if fastest == 0.0:
        return 1.0 if mean == 0.0 else float("inf")
    return mean / fastest


class ReportManager:
    """
    Aggrega i MeasurementRecord in tabelle di confronto.
    - summarize: media/minimo per (adapter, operazione) e rapporto con il più veloce
    - summarize_scaling: media per (adapter, operazione, scala)
    - Output CSV (+ opzionale MD/HTML) nella cartella outputs/
    """

    def __init__(self, config: Optional[BenchConfig] = None, outputs_dir: Optional[Union[str, Path]] = None) -> None:
        self.cfg = config or BenchConfig()
        self.outputs_dir = Path(outputs_dir) if outputs_dir is not None else Path(self.cfg.outputs_dir)

    # ---------- core ---------- #
    @staticmethod
    def _group(records: Iterable[MeasurementRecord], with_scale: bool) -> Dict[Tuple, List[MeasurementRecord]]:
        grouped: Dict[Tuple, List[MeasurementRecord]] = defaultdict(list)
        for rec in records:
            key = (rec.adapter_name, rec.operation, rec.scale) if with_scale else (rec.adapter_name, rec.operation)
            grouped[key].append(rec)
        return grouped

    def summarize(self, records: Iterable[MeasurementRecord]) -> pd.DataFrame:
        """
        Una riga per (adapter_name, operation), nell'ordine di prima comparsa.

        relative_to_fastest = mean_elapsed_ms / minimo dei mean_elapsed_ms della
        stessa operazione: l'adapter più veloce vale esattamente 1.0.
        Le prove fallite (elapsed NaN) sono escluse da media e minimo.
        """
        records = list(records)
        if not records:
            msg = "Nessuna misura da riassumere."
            log.error(msg)
            raise EmptyRecordSetError(msg)

        rows: List[Dict[str, object]] = []
        for (adapter_name, operation), recs in self._group(records, with_scale=False).items():
            ok = np.array([r.elapsed_ms for r in recs if not r.failed], dtype=float)
            sizes = [r.output_size_bytes for r in recs if r.output_size_bytes is not None]
            rows.append(
                {
                    "adapter_name": adapter_name,
                    "operation": operation.value,
                    "trials": len(recs),
                    "failures": len(recs) - ok.size,
                    "mean_elapsed_ms": float(ok.mean()) if ok.size else np.nan,
                    "min_elapsed_ms": float(ok.min()) if ok.size else np.nan,
                    "relative_to_fastest": np.nan,
                    "mean_size_bytes": float(np.mean(sizes)) if sizes else np.nan,
                    "mismatches": sum(1 for r in recs if r.matches_source is False),
                }
            )

        table = pd.DataFrame.from_records(rows, columns=SUMMARY_COLUMNS)
        for op in table["operation"].unique():
            mask = table["operation"] == op
            fastest = table.loc[mask, "mean_elapsed_ms"].min(skipna=True)
            table.loc[mask, "relative_to_fastest"] = [
                _relative(m, fastest) for m in table.loc[mask, "mean_elapsed_ms"]
            ]

        log.info(
            "Sintesi: %d righe da %d misure (%d fallite)",
            len(table),
            len(records),
            sum(1 for r in records if r.failed),
        )
        return table

    def summarize_scaling(self, records: Iterable[MeasurementRecord]) -> pd.DataFrame:
        """Tabella larga: una riga per (adapter, operazione), una colonna per fattore di scala."""
        records = list(records)
        if not records:
            msg = "Nessuna misura da riassumere."
            log.error(msg)
            raise EmptyRecordSetError(msg)

        rows = []
        for (adapter_name, operation, scale), recs in self._group(records, with_scale=True).items():
            ok = np.array([r.elapsed_ms for r in recs if not r.failed], dtype=float)
            rows.append(
                {
                    "adapter_name": adapter_name,
                    "operation": operation.value,
                    "scale": scale,
                    "mean_elapsed_ms": float(ok.mean()) if ok.size else np.nan,
                }
            )
        long = pd.DataFrame.from_records(rows)
        wide = long.pivot_table(
            index=["adapter_name", "operation"],
            columns="scale",
            values="mean_elapsed_ms",
            aggfunc="mean",
            dropna=False,
            sort=False,
        )
        wide.columns = [f"x{int(c)}" for c in wide.columns]
        return wide.reset_index()

    # ---------- salvataggi ---------- #
    def _save_csv(self, df: pd.DataFrame, path: Path) -> Path:
        df.to_csv(path, index=False, encoding="utf-8")
        log.info("Report CSV salvato: %s", path)
        return path

    @staticmethod
    def _to_markdown_simple(df: pd.DataFrame) -> str:
        # Markdown senza dipendere da 'tabulate'
        cols = list(df.columns)
        header = "|" + "|".join(str(c) for c in cols) + "|\n"
        align = "|" + "|".join("---" for _ in cols) + "|\n"
        rows = []
        for _, row in df.iterrows():
            rows.append("|" + "|".join(_fmt_cell(v) for v in row.tolist()) + "|")
        return header + align + "\n".join(rows) + "\n"

    def _save_md(self, df: pd.DataFrame, path: Path, title: str) -> Path:
        content = f"# {title}\n\nGenerato il {datetime.now():%Y-%m-%d %H:%M:%S}\n\n"
        content += self._to_markdown_simple(df)
        path.write_text(content, encoding="utf-8")
        log.info("Report Markdown salvato: %s", path)
        return path

    def _save_html(self, df: pd.DataFrame, path: Path, title: str) -> Path:
        table_html = df.to_html(index=False, escape=True, float_format="{:.3f}".format)
        html = f"""<!DOCTYPE html>
<html lang="it"><head><meta charset="UTF-8"><title>{title}</title>
<style>body{{font-family:Segoe UI,Arial,sans-serif;margin:20px;}} table{{border-collapse:collapse;width:100%;}}
th,td{{border:1px solid #ddd;padding:6px;}} th{{background:#f4f4f4;}}</style></head>
<body>
<h1>{title}</h1>
<p>Generato il {datetime.now():%Y-%m-%d %H:%M:%S}</p>
{table_html}
</body></html>"""
        path.write_text(html, encoding="utf-8")
        log.info("Report HTML salvato: %s", path)
        return path

    # ---------- API ---------- #
    def generate_report(
        self,
        records: Iterable[MeasurementRecord],
        formats: Union[str, ReportFormats] = "csv",
        base_name: Optional[str] = None,
        title: str = "Confronto formati",
    ) -> Dict[str, Optional[Path]]:
        """
        Costruisce la sintesi e salva i formati richiesti in outputs/.
        Ritorna dizionario con i path creati: {'csv': Path|None, 'md': Path|None, 'html': Path|None}
        """
        if isinstance(formats, str):
            fmt = ReportFormats.from_token(formats)
        else:
            fmt = formats

        table = self.summarize(records)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        base = (base_name or "benchmark") + f"_{ts}"

        out: Dict[str, Optional[Path]] = {"csv": None, "md": None, "html": None}
        if fmt.csv:
            out["csv"] = self._save_csv(table, self.outputs_dir / f"{base}.csv")
        if fmt.md:
            out["md"] = self._save_md(table, self.outputs_dir / f"{base}.md", title=title)
        if fmt.html:
            out["html"] = self._save_html(table, self.outputs_dir / f"{base}.html", title=title)

        log.info("Report generato. Formati: %s", ", ".join(k for k, v in out.items() if v))
        return out


def _fmt_cell(value: object) -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return ""
    if isinstance(value, float):
        return f"{value:.3f}"
    return str(value)


def summarize(records: Iterable[MeasurementRecord]) -> pd.DataFrame:
    """Scorciatoia per ReportManager().summarize(records)."""
    return ReportManager().summarize(records)

