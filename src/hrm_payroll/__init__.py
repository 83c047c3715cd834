"""HRM payroll finalization service."""

__version__ = "0.1.0"
