from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Dict, Optional

from .logger import LogManager

log = LogManager("config").get_logger()

PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.json"

INFERENCE_MODES = ("strict", "sampling", "fast")


@dataclass
class BenchConfig:
    """
    Parametri di default del harness, sovrascrivibili da config.json.

    - trials: ripetizioni per (adapter, operazione)
    - sample_rows: righe usate dall'inferenza a campione (sampling/fast)
    - inference_mode: strict | sampling | fast
    - chunk_size_bytes: dimensione nominale dei chunk del ChunkedReader
    - chunk_threshold_bytes: oltre questa dimensione la sorgente si carica a chunk
    - work_dir: cartella dei file scritti dal benchmark (None = temporanea)
    - outputs_dir: cartella dei report salvati
    - keep_files: se True non cancella i file scritti dal benchmark
    """

    trials: int = 3
    sample_rows: int = 1000
    inference_mode: str = "sampling"
    chunk_size_bytes: int = 8 * 1024 * 1024
    chunk_threshold_bytes: int = 256 * 1024 * 1024
    work_dir: Optional[str] = None
    outputs_dir: str = str(PROJECT_ROOT / "outputs")
    keep_files: bool = False

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def _validate(key: str, value: object) -> bool:
    if key in {"trials", "sample_rows", "chunk_size_bytes", "chunk_threshold_bytes"}:
        return isinstance(value, int) and not isinstance(value, bool) and value >= 1
    if key == "inference_mode":
        return isinstance(value, str) and value.strip().lower() in INFERENCE_MODES
    if key == "keep_files":
        return isinstance(value, bool)
    if key == "work_dir":
        return value is None or isinstance(value, str)
    if key == "outputs_dir":
        return isinstance(value, str) and value.strip() != ""
    return False


def load_config(path: Optional[Path | str] = None) -> BenchConfig:
    """
    Carica la configurazione partendo dai default.

    Chiavi sconosciute o valori non validi vengono ignorati con un warning;
    un file JSON illeggibile lascia tutti i default.
    """
    cfg = BenchConfig()
    cfg_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not cfg_path.exists():
        if path is not None:
            log.warning("Config non trovata (%s). Uso defaults.", cfg_path)
        return cfg

    try:
        data = json.loads(cfg_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.warning("Config non valida (%s). Uso defaults.", e)
        return cfg

    if not isinstance(data, dict):
        log.warning("Config non valida (%s): atteso un oggetto JSON. Uso defaults.", cfg_path)
        return cfg

    known = {f.name for f in fields(BenchConfig)}
    for key, value in data.items():
        if key not in known:
            log.warning("Chiave di config sconosciuta ignorata: %s", key)
            continue
        if not _validate(key, value):
            log.warning("Valore non valido per '%s' (%r). Uso default.", key, value)
            continue
        if key == "inference_mode":
            value = value.strip().lower()
        setattr(cfg, key, value)

    log.info("Config caricata: %s", cfg_path)
    return cfg
