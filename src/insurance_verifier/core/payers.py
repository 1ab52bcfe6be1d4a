"""Known-payer directory loaded from ``known_payers.csv``."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pandas as pd
from loguru import logger

OTHER_PAYER = "Other"
DEFAULT_ADAPTER = "edi"

_REQUIRED_COLUMNS = ("name", "payer_id", "adapter", "aliases")


class PayerDirectory:
    """Canonical payer names, aliases and adapter assignment.

    Lookups are case-insensitive and match either the canonical name or any
    ``|``-separated alias.
    """

    def __init__(self, frame: pd.DataFrame) -> None:
        missing = [col for col in _REQUIRED_COLUMNS if col not in frame.columns]
        if missing:
            raise ValueError(f"Payer directory is missing columns: {missing}")

        df = frame.fillna("")
        self._df = df
        self._by_key: dict[str, str] = {}
        for _, row in df.iterrows():
            name = str(row["name"]).strip()
            if not name:
                continue
            self._by_key[name.lower()] = name
            for alias in str(row["aliases"]).split("|"):
                alias = alias.strip()
                if alias:
                    self._by_key.setdefault(alias.lower(), name)

    @classmethod
    def from_csv(cls, csv_path: str | Path) -> PayerDirectory:
        csv_file = Path(csv_path)
        if not csv_file.exists():
            raise FileNotFoundError(f"Known payers file not found: {csv_path}")
        df = pd.read_csv(csv_file, dtype=str)
        logger.debug("Loaded payer directory — {n} payers", n=len(df))
        return cls(df)

    def known_payer_names(self) -> list[str]:
        """Canonical names plus ``"Other"``, as accepted by manual entry."""
        return [*self._df["name"].tolist(), OTHER_PAYER]

    def canonical(self, name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        return self._by_key.get(name.strip().lower())

    def is_acceptable_manual_entry(self, name: str) -> bool:
        return name.strip().lower() == OTHER_PAYER.lower() or self.canonical(name) is not None

    def _row(self, name: Optional[str]) -> Optional[pd.Series]:
        canonical = self.canonical(name)
        if canonical is None:
            return None
        rows = self._df[self._df["name"] == canonical]
        return None if rows.empty else rows.iloc[0]

    def payer_id_for(self, name: Optional[str]) -> Optional[str]:
        row = self._row(name)
        if row is None or not str(row["payer_id"]).strip():
            return None
        return str(row["payer_id"]).strip()

    def adapter_for(self, name: Optional[str]) -> str:
        row = self._row(name)
        if row is None or not str(row["adapter"]).strip():
            return DEFAULT_ADAPTER
        return str(row["adapter"]).strip()
