from __future__ import annotations


class StoreError(RuntimeError):
    """The record store is unavailable, closed or corrupt."""


class ValidationError(ValueError):
    """Input rejected before any store or network call."""


class DuplicateFolderError(ValidationError):
    """A folder with the same name (ignoring case) already exists."""


class EnrichmentMiss(Exception):
    """A single enrichment source produced nothing usable.

    Internal to the source chain: the orchestrator swallows it and moves on
    to the next source.
    """
