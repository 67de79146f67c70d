"""Utility functions for chatpilot."""

from chatpilot.utils.helpers import ensure_dir, get_data_path, utc_date_str

__all__ = ["ensure_dir", "get_data_path", "utc_date_str"]
