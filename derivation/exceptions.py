# /derivation/exceptions.py

class DerivationError(Exception):
    """Base class for all errors raised by the derivation package."""


class OntologyConfigError(DerivationError):
    """The ontology store is missing, unreadable, or fails validation."""


class SlotDefinitionLookupError(DerivationError):
    """A slot-definition set could not be fetched or had an unexpected shape."""


class MarkerStoreError(DerivationError):
    """The marker store failed to read or write."""


class MarkerNotFoundError(DerivationError):
    def __init__(self, marker_id: str):
        super().__init__(f"Marker {marker_id} not found.")
        self.marker_id = marker_id


class DuplicateDerivationError(MarkerStoreError):
    """A derivation edge with the same rule id already exists for the source marker."""

    def __init__(self, source_marker_id: str, rule_ids):
        super().__init__(
            f"Marker {source_marker_id} already has derivations for: {', '.join(sorted(rule_ids))}"
        )
        self.source_marker_id = source_marker_id
        self.rule_ids = set(rule_ids)
