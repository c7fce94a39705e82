"""YouTube Reporting ingestion worker.

Keeps delegated Google credentials fresh, pulls YouTube Reporting API report
files for every registered job, and stores parsed daily metrics.
"""

__all__: list[str] = []
