from __future__ import annotations

import argparse
import logging
import math
from pathlib import Path
from typing import List, Optional, Sequence

import pandas as pd
from rich.console import Console
from rich.table import Table

from .adapters import FormatTag, get_adapter
from .benchmark import BenchmarkEngine
from .config import INFERENCE_MODES, load_config
from .errors import IOBenchError
from .logger import LogManager
from .registry import DatasetRegistry
from .report_manager import ReportManager

DEFAULT_ADAPTERS = ",".join(tag.value for tag in FormatTag)


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="iobench",
        description="Confronta i backend di serializzazione su un dataset (tempi e dimensioni).",
    )
    parser.add_argument("path", help="File sorgente (sola lettura)")
    parser.add_argument("--name", help="Nome del dataset (default: nome del file)")
    parser.add_argument("--format", dest="format_tag", help="Formato della sorgente; prevale sul suffisso")
    parser.add_argument("--adapters", default=DEFAULT_ADAPTERS, help="Adapter da confrontare, separati da virgola")
    parser.add_argument("--trials", type=int, help="Ripetizioni per operazione")
    parser.add_argument("--inference", choices=INFERENCE_MODES, help="Politica di inferenza dei tipi")
    parser.add_argument("--scales", help="Fattori di replica, es. 1,10,100")
    parser.add_argument("--report", help="Salva il report: csv | csv+md | csv+html | csv+md+html")
    parser.add_argument("--config", help="File JSON di configurazione")
    parser.add_argument("--work-dir", help="Cartella per i file scritti dal benchmark")
    parser.add_argument("--keep-files", action="store_true", help="Non cancellare i file scritti")
    parser.add_argument("--quiet", action="store_true", help="Solo errori sulla console")
    parser.add_argument("--verbose", action="store_true", help="Anche i messaggi di debug sulla console")
    return parser.parse_args(argv)


def _fmt(value: object, digits: int = 3) -> str:
    if isinstance(value, float):
        return "-" if math.isnan(value) else f"{value:.{digits}f}"
    return str(value)


def build_rich_table(summary: pd.DataFrame, title: str) -> Table:
    """Converte la tabella di sintesi in una tabella rich per la console."""
    table = Table(title=title, header_style="bold")
    for column in summary.columns:
        justify = "left" if column in ("adapter_name", "operation") else "right"
        table.add_column(str(column), justify=justify)
    for row in summary.itertuples(index=False):
        table.add_row(*(_fmt(v) for v in row))
    return table


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    logger = LogManager("cli").get_logger()
    if args.quiet:
        LogManager.set_console_level(logging.ERROR)
    elif args.verbose:
        LogManager.set_console_level(logging.DEBUG)

    cfg = load_config(args.config)
    if args.inference:
        cfg.inference_mode = args.inference
    console = Console()

    try:
        registry = DatasetRegistry()
        descriptor = registry.describe(
            args.name or Path(args.path).stem,
            args.path,
            format_tag=args.format_tag,
            inference_mode=cfg.inference_mode,
            sample_rows=cfg.sample_rows,
        )
        adapters = [
            get_adapter(token.strip(), inference_mode=cfg.inference_mode, sample_rows=cfg.sample_rows)
            for token in args.adapters.split(",")
            if token.strip()
        ]
        engine = BenchmarkEngine(
            registry=registry,
            config=cfg,
            work_dir=args.work_dir,
            keep_files=args.keep_files or None,
        )
        reports = ReportManager(config=cfg)

        title = f"{descriptor.name}: confronto formati"
        base_name = descriptor.name
        if args.scales:
            scales: List[int] = [int(s) for s in args.scales.split(",") if s.strip()]
            records = engine.run_scaling(descriptor, adapters, scales, trials=args.trials)
            console.print(build_rich_table(reports.summarize_scaling(records), "Tempo medio (ms) per scala"))
            # la sintesi piatta non mescola scale diverse: solo la più grande
            largest = max(r.scale for r in records) if records else 1
            records = [r for r in records if r.scale == largest]
            title = f"{title} (x{largest})"
            base_name = f"{base_name}_x{largest}"
        else:
            records = engine.run(descriptor, adapters, trials=args.trials)

        summary = reports.summarize(records)
        console.print(build_rich_table(summary, title))

        if args.report:
            paths = reports.generate_report(
                records, formats=args.report, base_name=base_name, title=title
            )
            for kind, path in paths.items():
                if path:
                    console.print(f"{kind}: {path}")
    except (IOBenchError, ValueError) as exc:
        logger.error("Benchmark interrotto: %s", exc)
        console.print(f"[red]Errore:[/red] {exc}")
        return 2
    return 0

