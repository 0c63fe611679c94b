"""Utility helpers for metamemory."""

from .output_schema import convert_output_schema
from .single_flight import SingleFlight

__all__ = [
    "SingleFlight",
    "convert_output_schema",
]
