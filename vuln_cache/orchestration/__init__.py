"""
Orchestration - refreshing a cache directory from one upstream feed

Key Components:
- IncrementalOrchestrator: walks the year shards, merges and persists them
- NvdFeed / GhsaFeed: how each upstream is asked for one shard's records
- ProgressReporter: receives page-level progress; tqdm flavour for the CLI
"""

from .feeds import Feed, FeedResult, GhsaFeed, NvdFeed
from .incremental_orchestrator import (
    IncrementalOrchestrator,
    RefreshReport,
    ShardOutcome,
    ShardResult,
)
from .progress import ProgressReporter, TqdmProgressReporter

__all__ = [
    'Feed',
    'FeedResult',
    'GhsaFeed',
    'NvdFeed',
    'IncrementalOrchestrator',
    'RefreshReport',
    'ShardOutcome',
    'ShardResult',
    'ProgressReporter',
    'TqdmProgressReporter',
]
