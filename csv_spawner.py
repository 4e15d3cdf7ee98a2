"""
Genera i dataset di esempio usati per i confronti tra formati.

Esegui con: python3 csv_spawner.py [cartella]
"""
import os
import sys

import numpy as np
import pandas as pd


def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def make_co2(rng: np.random.Generator) -> pd.DataFrame:
    """Serie mensile stile Mauna Loa: 468 righe, 3 colonne (anno, mese, ppm)."""
    months = np.arange(468)
    trend = 315.0 + 0.11 * months + 0.00008 * months ** 2
    seasonal = 3.0 * np.sin(2 * np.pi * months / 12)
    return pd.DataFrame({
        "year": 1959 + months // 12,
        "month": months % 12 + 1,
        "ppm": np.round(trend + seasonal + rng.normal(0, 0.3, months.size), 2),
    })


def make_voyages(rng: np.random.Generator, rows: int = 8000) -> pd.DataFrame:
    """
    Registro navale con colonna 'built' numerica fino alla riga 2840 e
    testuale alla 2841: caso di studio per le politiche di inferenza.
    """
    built = rng.integers(1600, 1800, rows).astype(str).astype(object)
    built[2840] = "1721 (restored)"
    return pd.DataFrame({
        "number": np.arange(1, rows + 1),
        "boatname": rng.choice(["AMSTERDAM", "BATAVIA", "DUYFKEN", "ZEEWOLF"], rows),
        "built": built,
        "tonnage": rng.integers(80, 1200, rows),
        "departure_harbour": rng.choice(["Texel", "Wielingen", "Goeree"], rows),
    })


def generate_all(outdir: str = "datasets"):
    ensure_dir(outdir)
    rng = np.random.default_rng(1234)

    make_co2(rng).to_csv(f"{outdir}/co2.csv", index=False)
    make_voyages(rng).to_csv(f"{outdir}/voyages.csv", index=False)

    print(f"Tutti i file creati in: {os.path.abspath(outdir)}")


if __name__ == "__main__":
    generate_all(sys.argv[1] if len(sys.argv) > 1 else "datasets")
