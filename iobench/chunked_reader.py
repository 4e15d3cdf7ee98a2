"""
Lettura a chunk di file delimitati più grandi della memoria disponibile.

Il file viene letto a blocchi di `chunk_size_bytes`; la coda di ogni blocco
successiva all'ultimo record completo resta nel buffer di riporto e viene
anteposta al blocco seguente, così ogni chunk contiene solo record interi.
Un newline dentro un campo tra virgolette non chiude il record.

Le righe arrivano nell'ordine del file: aggregati calcolati chunk per chunk
non equivalgono a un campionamento casuale.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Sequence, Tuple

import pandas as pd
from pandas.api.types import union_categoricals

from .adapters import DelimitedTextAdapter, FormatAdapter, PathLike
from .errors import InvalidChunkSizeError
from .inference import InferenceReport, SchemaTracker
from .logger import LogManager

log = LogManager("chunked_reader").get_logger()

QUOTE = b'"'
NEWLINE = b"\n"


@dataclass(frozen=True)
class Chunk:
    source_path: str
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length


def validate_chunk_size(chunk_size_bytes: object) -> int:
    if (
        isinstance(chunk_size_bytes, bool)
        or not isinstance(chunk_size_bytes, numbers.Integral)
        or chunk_size_bytes <= 0
    ):
        msg = f"chunk_size_bytes deve essere un intero positivo (ricevuto {chunk_size_bytes!r})"
        log.error(msg)
        raise InvalidChunkSizeError(msg)
    return int(chunk_size_bytes)


def _last_record_end(buf: bytes) -> int:
    """Offset successivo all'ultimo newline fuori dalle virgolette (0 se nessuno)."""
    end = 0
    pos = 0
    quotes = 0
    while True:
        nl = buf.find(NEWLINE, pos)
        if nl == -1:
            return end
        quotes += buf.count(QUOTE, pos, nl)
        if quotes % 2 == 0:
            end = nl + 1
        pos = nl + 1


def _first_record_end(buf: bytes) -> int:
    """Offset successivo al primo record completo (tutto il buffer se non termina)."""
    pos = 0
    quotes = 0
    while True:
        nl = buf.find(NEWLINE, pos)
        if nl == -1:
            return len(buf)
        quotes += buf.count(QUOTE, pos, nl)
        if quotes % 2 == 0:
            return nl + 1
        pos = nl + 1


class ChunkedReader:
    """
    Produce una DataFrame parziale per ogni chunk, in modo pigro.

    - adapter: deve supportare parse_records (testo delimitato)
    - schema: tipi imposti a tutti i chunk; se None i tipi vengono dedotti
      una sola volta per l'intero file (infer_schema), con la politica
      dell'adapter, così la concatenazione dei chunk coincide con la
      lettura completa qualunque sia chunk_size_bytes
    """

    def __init__(
        self,
        adapter: Optional[FormatAdapter] = None,
        schema: Optional[Sequence[Tuple[str, str]]] = None,
    ) -> None:
        self.adapter = adapter if adapter is not None else DelimitedTextAdapter()
        if not self.adapter.supports_chunking:
            raise ValueError(f"L'adapter {self.adapter.name} non supporta la lettura a chunk")
        self.schema = tuple(schema) if schema is not None else None

    # ---------- blocchi di byte ----------
    def _blocks(self, source: Path, chunk_size: int) -> Iterator[Tuple[Chunk, bytes]]:
        carry = b""
        offset = 0
        with open(source, "rb") as fh:
            while True:
                data = fh.read(chunk_size)
                eof = not data
                buffer = carry + data
                if eof:
                    cut = len(buffer)
                    if cut == 0:
                        return
                else:
                    cut = _last_record_end(buffer)
                    if cut == 0:
                        # record più lungo del chunk: continua a leggere
                        carry = buffer
                        continue
                block, carry = buffer[:cut], buffer[cut:]
                chunk = Chunk(source_path=str(source), offset=offset, length=cut)
                offset += cut
                yield chunk, block
                if eof:
                    return

    def _record_blocks(self, source: Path, chunk_size: int) -> Iterator[Tuple[Chunk, bytes]]:
        """Come _blocks, ma senza la riga di header nel primo blocco."""
        blocks = self._blocks(source, chunk_size)
        header_pending = True
        try:
            for chunk, block in blocks:
                if header_pending:
                    block = block[_first_record_end(block):]
                    header_pending = False
                yield chunk, block
        finally:
            blocks.close()

    def iter_chunks(self, path: PathLike, chunk_size_bytes: int) -> Iterator[Chunk]:
        """Intervalli di byte dei chunk (senza interpretarne il contenuto)."""
        size = validate_chunk_size(chunk_size_bytes)
        source = self.adapter._check_source(path)
        return self._chunk_ranges(source, size)

    def _chunk_ranges(self, source: Path, size: int) -> Iterator[Chunk]:
        blocks = self._blocks(source, size)
        try:
            for chunk, _ in blocks:
                yield chunk
        finally:
            blocks.close()

    # ---------- schema ----------
    def infer_schema(self, path: PathLike, chunk_size_bytes: int) -> InferenceReport:
        """
        Deduce i tipi dell'intero file leggendolo a chunk.

        SAMPLING si ferma appena raccolte `sample_rows` righe; STRICT e FAST
        scandiscono tutto il file (una colonna può cambiare tipo all'ultima
        riga). I numeri di riga delle diagnostiche sono globali.
        """
        size = validate_chunk_size(chunk_size_bytes)
        source = self.adapter._check_source(path)
        header = self.adapter.read_header(source)
        return self._infer(source, size, header)

    def _infer(self, source: Path, size: int, header: Sequence[str]) -> InferenceReport:
        tracker = SchemaTracker(
            header,
            mode=self.adapter.inference_mode,
            sample_rows=self.adapter.sample_rows,
        )
        blocks = self._record_blocks(source, size)
        try:
            for _, block in blocks:
                tracker.update(self.adapter.parse_raw(block, header, row_offset=tracker.rows))
                if tracker.complete:
                    break
        finally:
            blocks.close()

        report = tracker.report()
        log.info(
            "Schema di %s dedotto a chunk (%s, %d righe esaminate): %s",
            source.name,
            report.mode.value,
            tracker.rows,
            ", ".join(f"{name}={kind}" for name, kind in report.schema),
        )
        return report

    # ---------- tabelle ----------
    def stream(self, path: PathLike, chunk_size_bytes: int) -> Iterator[pd.DataFrame]:
        """
        Sequenza pigra, a passaggio singolo, di DataFrame parziali.

        I parametri vengono validati subito; il file viene aperto solo alla
        prima richiesta e chiuso a fine lettura, in caso di errore o quando il
        chiamante abbandona la sequenza (close() o garbage collection).
        Senza schema la prima richiesta esegue anche la deduzione dei tipi.
        """
        size = validate_chunk_size(chunk_size_bytes)
        source = self.adapter._check_source(path)
        header = self.adapter.read_header(source)
        return self._tables(source, size, header)

    def _tables(self, source: Path, size: int, header: Sequence[str]) -> Iterator[pd.DataFrame]:
        schema = self.schema
        if schema is None:
            schema = self._infer(source, size, header).schema

        blocks = self._record_blocks(source, size)
        rows = 0
        try:
            for index, (chunk, block) in enumerate(blocks):
                result = self.adapter.parse_records(block, header, row_offset=rows, schema=schema)
                for diag in result.report.diagnostics[:5]:
                    log.debug("%s: %s", source.name, diag)
                log.debug(
                    "Chunk %d di %s: offset=%d, byte=%d, righe=%d",
                    index,
                    source.name,
                    chunk.offset,
                    chunk.length,
                    len(result.df),
                )
                rows += len(result.df)
                yield result.df
        finally:
            blocks.close()
        log.info("Lettura a chunk completata: %s (%d righe)", source.name, rows)

    def read_all(self, path: PathLike, chunk_size_bytes: int) -> pd.DataFrame:
        """
        Concatena tutti i chunk (utile per verifiche e per sorgenti poco oltre soglia).

        Le colonne categoriali di chunk diversi hanno categorie diverse:
        vengono riunite con union_categoricals invece di ridursi a stringhe.
        """
        header = self.adapter.read_header(path)
        parts = [part for part in self.stream(path, chunk_size_bytes) if len(part)]
        if not parts:
            return pd.DataFrame({name: pd.Series([], dtype="string") for name in header})

        combined = pd.concat(parts, ignore_index=True)
        for column in parts[0].columns:
            if isinstance(parts[0][column].dtype, pd.CategoricalDtype):
                merged = union_categoricals([part[column] for part in parts], sort_categories=True)
                combined[column] = pd.Series(merged, index=combined.index)
        return combined
