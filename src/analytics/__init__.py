"""Outcome analytics: rolling Aggregate Outcome Index."""

from .aoi import AOIPoint, RollingOutcomeAggregator, compute_aoi, compute_aoi_n

__all__ = ["AOIPoint", "RollingOutcomeAggregator", "compute_aoi", "compute_aoi_n"]
