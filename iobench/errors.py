"""
Eccezioni del harness.

Gli errori di registry e di parametri sono fatali per l'operazione chiamante;
gli errori degli adapter durante il benchmark vengono invece registrati nei
MeasurementRecord (vedi benchmark.BenchmarkEngine.run).
"""

from __future__ import annotations


class IOBenchError(Exception):
    """Base di tutte le eccezioni del pacchetto."""
    pass


class UnreadableSourceError(IOBenchError):
    """Sorgente inesistente o con contenuto non conforme al formato atteso."""
    pass


class UnwritableTargetError(IOBenchError):
    """Destinazione non scrivibile (cartella mancante, permessi, sorgente protetta)."""
    pass


class DuplicateDatasetError(IOBenchError):
    """Nome dataset già registrato con un source_path diverso."""
    pass


class UnknownDatasetError(IOBenchError):
    """Nome dataset non presente nel registry."""
    pass


class InvalidChunkSizeError(IOBenchError, ValueError):
    """chunk_size_bytes deve essere un intero positivo."""
    pass


class InvalidTrialCountError(IOBenchError, ValueError):
    """trials deve essere un intero >= 1."""
    pass


class EmptyRecordSetError(IOBenchError, ValueError):
    """Nessun MeasurementRecord da riassumere."""
    pass
