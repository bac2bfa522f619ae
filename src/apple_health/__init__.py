"""Apple Health Tools: lazy, memory-bounded SQL access to health-data exports.

Datasets are discovered from a directory of CSV files, loaded into an
in-process Polars SQL engine on first reference, evicted under memory
pressure, and served through a result cache. The MCP server and CLI under
`interfaces/` are thin layers over `HealthDataService`.
"""

__all__ = [
    "__version__",
]

__version__ = "0.1.0"
