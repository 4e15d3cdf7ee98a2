"""Configurazione pytest e fixtures condivise."""
from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from iobench.adapters import ColumnarBinaryAdapter, DelimitedTextAdapter, NativeBinaryAdapter
from tests.fixtures.datasets import co2_table, typed_table, write_built_csv, write_multiline_csv


@pytest.fixture
def typed_df() -> pd.DataFrame:
    return typed_table()


@pytest.fixture
def co2_csv(tmp_path: Path) -> Path:
    """CSV del dataset co2 (468 righe, 3 colonne)."""
    path = tmp_path / "co2.csv"
    co2_table().to_csv(path, index=False)
    return path


@pytest.fixture
def built_csv(tmp_path: Path) -> Path:
    return write_built_csv(tmp_path / "voyages.csv")


@pytest.fixture
def multiline_csv(tmp_path: Path) -> Path:
    return write_multiline_csv(tmp_path / "multiline.csv")


@pytest.fixture
def sample_csv_basic(tmp_path: Path) -> Path:
    """CSV base con dati numerici e testuali semplici."""
    path = tmp_path / "basic.csv"
    path.write_text(
        "time,value,name\n"
        "0,1.5,alpha\n"
        "1,2.5,beta\n"
        "2,3.5,gamma\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture(params=["delimited_text", "native_binary", "columnar_binary"])
def any_adapter(request):
    """Un adapter per ogni formato fisico."""
    return {
        "delimited_text": DelimitedTextAdapter,
        "native_binary": NativeBinaryAdapter,
        "columnar_binary": ColumnarBinaryAdapter,
    }[request.param]()
