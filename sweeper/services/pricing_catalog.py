"""
Default service catalog and add-ons.

Loaded into ``PricingConfig`` at startup; PRICING_CATALOG_PATH may point to a
JSON file with the same shape to replace it for another region.
"""
import json
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_SERVICES: Dict[str, Dict[str, Any]] = {
    "regular": {
        "base_price": "120.00",
        "duration": "2.5",
        "price_per_mile": "2.50",
        "multipliers": {"rush": "1.15", "weekend": "1.10", "holiday": "1.25"},
    },
    "deep": {
        "base_price": "250.00",
        "duration": "4.5",
        "price_per_mile": "3.00",
        "multipliers": {"rush": "1.20", "weekend": "1.15", "holiday": "1.30"},
    },
    "move_in_out": {
        "base_price": "300.00",
        "duration": "5.0",
        "price_per_mile": "3.50",
        "multipliers": {"rush": "1.25", "weekend": "1.20", "holiday": "1.35"},
    },
    "airbnb": {
        "base_price": "80.00",
        "duration": "1.5",
        "price_per_mile": "2.00",
        "multipliers": {"rush": "1.10", "weekend": "1.05", "holiday": "1.20"},
    },
    "office": {
        "base_price": "150.00",
        "duration": "3.0",
        "price_per_mile": "2.75",
        # Weekend office cleaning is priced above rush hour
        "multipliers": {"rush": "1.15", "weekend": "1.25", "holiday": "1.40"},
    },
    "commercial": {
        "base_price": "200.00",
        "duration": "4.0",
        "price_per_mile": "3.25",
        "multipliers": {"rush": "1.20", "weekend": "1.30", "holiday": "1.45"},
    },
}

DEFAULT_ADD_ONS: Dict[str, Dict[str, Any]] = {
    "inside_oven": {"name": "Inside Oven Cleaning", "price": "25.00"},
    "inside_fridge": {"name": "Inside Refrigerator Cleaning", "price": "25.00"},
    "inside_windows": {"name": "Inside Window Cleaning", "price": "30.00"},
    "garage": {"name": "Garage Cleaning", "price": "40.00"},
    "basement": {"name": "Basement Cleaning", "price": "35.00"},
    "attic": {"name": "Attic Cleaning", "price": "30.00"},
    "carpet_steam": {"name": "Carpet Steam Cleaning", "price": "50.00"},
    "upholstery": {"name": "Upholstery Cleaning", "price": "40.00"},
}


def load_catalog(path: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """
    Return ``{"services": ..., "add_ons": ...}``.

    A JSON file replaces whichever top-level keys it defines; numbers are read
    as Decimal so prices stay exact.
    """
    catalog = {"services": DEFAULT_SERVICES, "add_ons": DEFAULT_ADD_ONS}
    if not path:
        return catalog

    with Path(path).open("r", encoding="utf-8") as fp:
        override = json.load(fp, parse_float=Decimal)

    for key in ("services", "add_ons"):
        if key in override:
            catalog[key] = override[key]
    return catalog
