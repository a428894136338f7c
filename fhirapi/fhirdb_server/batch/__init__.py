"""
Batch module for FHIR DB Server.

Sequential, non-transactional processing of FHIR batch Bundles.
"""

from .processor import BatchEntryOutcome, BatchProcessor, BundleResponse, is_batch_bundle

__all__ = ["BatchProcessor", "BatchEntryOutcome", "BundleResponse", "is_batch_bundle"]
