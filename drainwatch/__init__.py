"""CAPD drainage monitoring core: data sources, sync and orchestration."""

__version__ = "0.1.0"
