"""Doowon portal: CodeBeamer-backed report and asset management pages."""

__version__ = "0.1.0"
