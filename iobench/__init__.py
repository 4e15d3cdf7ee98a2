"""
iobench: confronto di backend di serializzazione e ingestione a chunk.

Abilita Copy-on-Write di pandas: le proiezioni su colonne e le tabelle
passate agli adapter non vengono copiate finché nessuno le modifica.
"""

import pandas as pd

pd.options.mode.copy_on_write = True
