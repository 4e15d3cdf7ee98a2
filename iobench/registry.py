from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .adapters import FormatTag, PathLike, adapter_for_path, infer_format
from .errors import DuplicateDatasetError, UnknownDatasetError, UnwritableTargetError
from .inference import DEFAULT_SAMPLE_ROWS, InferenceMode
from .logger import LogManager

log = LogManager("registry").get_logger()

Schema = Tuple[Tuple[str, str], ...]


def _normalize(path: PathLike) -> str:
    return os.path.normcase(os.path.abspath(os.fspath(path)))


@dataclass(frozen=True)
class DatasetDescriptor:
    name: str
    source_path: str
    schema: Schema = ()
    size_bytes: int = 0
    format_tag: Optional[FormatTag] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Il nome del dataset non può essere vuoto")
        if self.size_bytes < 0:
            raise ValueError(f"size_bytes negativo per '{self.name}': {self.size_bytes}")
        object.__setattr__(self, "source_path", os.fspath(self.source_path))
        object.__setattr__(self, "schema", tuple((str(c), str(t)) for c, t in self.schema))
        if self.format_tag is not None:
            object.__setattr__(self, "format_tag", FormatTag.parse(self.format_tag))

    @property
    def columns(self) -> List[str]:
        return [name for name, _ in self.schema]

    @property
    def resolved_format(self) -> FormatTag:
        return self.format_tag if self.format_tag is not None else infer_format(self.source_path)


class DatasetRegistry:
    """
    Tabella dei dataset noti, indicizzata per nome.

    Le sorgenti registrate sono di sola lettura: ensure_writable() rifiuta
    qualunque scrittura che punti a un source_path registrato.
    Nessun lock interno: le registrazioni vanno serializzate dal chiamante.
    """

    def __init__(self) -> None:
        self._datasets: Dict[str, DatasetDescriptor] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._datasets

    def __len__(self) -> int:
        return len(self._datasets)

    def __iter__(self) -> Iterator[DatasetDescriptor]:
        return iter(list(self._datasets.values()))

    def names(self) -> List[str]:
        return list(self._datasets)

    def register(self, descriptor: DatasetDescriptor) -> None:
        existing = self._datasets.get(descriptor.name)
        if existing is not None:
            if _normalize(existing.source_path) == _normalize(descriptor.source_path):
                log.debug("Dataset '%s' già registrato con lo stesso path", descriptor.name)
                return
            msg = (
                f"Dataset '{descriptor.name}' già registrato con source_path "
                f"{existing.source_path} (nuovo: {descriptor.source_path})"
            )
            log.error(msg)
            raise DuplicateDatasetError(msg)

        self._datasets[descriptor.name] = descriptor
        log.info(
            "Dataset registrato: %s (%s, %d byte, %d colonne)",
            descriptor.name,
            descriptor.source_path,
            descriptor.size_bytes,
            len(descriptor.schema),
        )

    def resolve(self, name: str) -> DatasetDescriptor:
        try:
            return self._datasets[name]
        except KeyError:
            msg = f"Dataset sconosciuto: {name}"
            log.error(msg)
            raise UnknownDatasetError(msg) from None

    def unregister(self, name: str) -> DatasetDescriptor:
        descriptor = self.resolve(name)
        del self._datasets[name]
        log.info("Dataset rimosso dal registry: %s", name)
        return descriptor

    def describe(
        self,
        name: str,
        path: PathLike,
        format_tag: Optional[FormatTag | str] = None,
        inference_mode: InferenceMode | str = InferenceMode.SAMPLING,
        sample_rows: int = DEFAULT_SAMPLE_ROWS,
    ) -> DatasetDescriptor:
        """
        Crea il descrittore leggendo il file (dimensione da stat, schema dai tipi
        ottenuti con l'adapter del formato) e lo registra.

        Se il nome è già registrato con lo stesso path restituisce il
        descrittore esistente senza rileggere il file.
        """
        existing = self._datasets.get(name)
        if existing is not None and _normalize(existing.source_path) == _normalize(path):
            return existing

        adapter = adapter_for_path(
            path, format_tag, inference_mode=inference_mode, sample_rows=sample_rows
        )
        _, report = adapter.read(path, return_details=True)
        descriptor = DatasetDescriptor(
            name=name,
            source_path=os.fspath(path),
            schema=report.schema,
            size_bytes=Path(path).stat().st_size,
            format_tag=adapter.tag,
        )
        self.register(descriptor)
        return descriptor

    def is_source(self, path: PathLike) -> bool:
        target = _normalize(path)
        return any(_normalize(d.source_path) == target for d in self._datasets.values())

    def ensure_writable(self, path: PathLike) -> None:
        """I dati grezzi restano di sola lettura: nessuna scrittura su una sorgente registrata."""
        if self.is_source(path):
            msg = f"Scrittura rifiutata: {path} è la sorgente di un dataset registrato"
            log.error(msg)
            raise UnwritableTargetError(msg)
