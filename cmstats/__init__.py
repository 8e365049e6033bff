"""Challenge Mode leaderboard ingestion, identity reconciliation, ranking and static export."""

__version__ = "1.0.0"
