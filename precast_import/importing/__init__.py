"""Workbook decoding and batch persistence for element-type imports."""
