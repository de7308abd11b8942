"""Validation and correction toolkit for school-administration spreadsheet imports."""

__version__ = "0.1.0"
