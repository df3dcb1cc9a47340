"""NVD CVE API 2.0 source: offset-paginated client plus year/date-window chunking"""

from .client import (
    NVD_API_URL,
    MAX_RESULTS_PER_PAGE,
    Filter,
    BooleanFilter,
    NvdCveClient,
    NvdClientFactory,
    date_range_filters,
    format_nvd_date,
)
from .windowed_source import (
    MAX_SPAN,
    MAX_SPAN_DAYS,
    NVD_MAX_RANGE,
    DateWindow,
    WindowedRecordSource,
    YearFetchResult,
    compute_windows,
    fetch_years,
)

__all__ = [
    'NVD_API_URL',
    'MAX_RESULTS_PER_PAGE',
    'Filter',
    'BooleanFilter',
    'NvdCveClient',
    'NvdClientFactory',
    'date_range_filters',
    'format_nvd_date',
    'MAX_SPAN',
    'MAX_SPAN_DAYS',
    'NVD_MAX_RANGE',
    'DateWindow',
    'WindowedRecordSource',
    'YearFetchResult',
    'compute_windows',
    'fetch_years',
]
