"""
vuln_cache - incremental, year-sharded mirror of NVD CVEs and GitHub security advisories

Fetches records page by page from the NVD CVE API 2.0 and the GitHub advisory
GraphQL API under a shared rate limiter, and keeps a gzip cache per publish year
that later runs refresh with only the records changed since the last run.
"""

__version__ = "1.0.0"
