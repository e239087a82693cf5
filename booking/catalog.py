"""
Static catalogs — saved collection addresses and partner lab providers.

Both CSVs are loaded once at import time into Pandas DataFrames and exposed as
model instances. The provider catalog order matters: the first row is the
default provider, so a price can always be computed before the user picks one.

Source: data/addresses.csv, data/providers.csv
Override with ADDRESSES_CSV / PROVIDERS_CSV to point at another catalog.
"""

import os
from pathlib import Path

import pandas as pd

from booking.models import Address, Provider

_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
_ADDRESSES_CSV = Path(os.getenv("ADDRESSES_CSV", _DATA_DIR / "addresses.csv"))
_PROVIDERS_CSV = Path(os.getenv("PROVIDERS_CSV", _DATA_DIR / "providers.csv"))

# Load once at module import; ids stay strings even when they look numeric
_addresses_df: pd.DataFrame = pd.read_csv(_ADDRESSES_CSV, dtype={"id": str})
_providers_df: pd.DataFrame = pd.read_csv(
    _PROVIDERS_CSV,
    dtype={"id": str, "rating": float, "delivery_fee": float, "optional_test_price": float},
)

if _providers_df.empty:
    raise ValueError(f"Provider catalog {_PROVIDERS_CSV} is empty; a default provider is required")


class UnknownCatalogEntry(LookupError):
    """Raised when an address or provider id is not in the catalog."""


def get_addresses() -> list[Address]:
    return [Address(**row) for row in _addresses_df.to_dict(orient="records")]


def get_providers() -> list[Provider]:
    return [Provider(**row) for row in _providers_df.to_dict(orient="records")]


def default_provider() -> Provider:
    """First provider in the catalog."""
    return Provider(**_providers_df.iloc[0].to_dict())
