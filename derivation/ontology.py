# /derivation/ontology.py

import datetime
import json
import os
from collections import defaultdict
from typing import Dict, Iterable, List

from pydantic import ValidationError

from derivation.exceptions import OntologyConfigError
from derivation.logger import get_logger
from derivation.models import OntologyConfig, OntologyVersion, TagOntologyRule

logger = get_logger(__name__)


class OntologyGraph:
    """
    Forward index of ontology rules keyed by source tag.

    No DAG check is made here; the closure engine bounds traversal by depth
    and by a visited-edge set.
    """
    def __init__(self, rules: Iterable[TagOntologyRule]):
        self._by_source: Dict[str, List[TagOntologyRule]] = defaultdict(list)
        for rule in rules:
            self._by_source[rule.source_tag_id].append(rule)

    @classmethod
    def from_config(cls, config: OntologyConfig) -> "OntologyGraph":
        return cls(config.rules)

    def rules_from(self, tag_id: str) -> List[TagOntologyRule]:
        # .get so that lookups never grow the defaultdict
        return list(self._by_source.get(tag_id, ()))

    def source_tag_ids(self) -> List[str]:
        return list(self._by_source.keys())


def _reject_duplicate_keys(pairs):
    """json object_pairs_hook: plain json.load keeps the last duplicate key silently."""
    obj = {}
    for key, value in pairs:
        if key in obj:
            raise OntologyConfigError(f"Duplicate key '{key}' in ontology store.")
        obj[key] = value
    return obj


class OntologyStore:
    """
    Versioned ontology configuration kept in a JSON file:

        {"versions": [{"version": 1, "createdAt": "...", "ontology": {...}}],
         "latest_version": 1}

    Every read returns an immutable snapshot of the latest version. There is
    no built-in default ruleset: a missing or malformed store is an error.
    """
    def __init__(self, path: str):
        self.path = path

    def _read_store(self) -> dict:
        try:
            with open(self.path, 'r') as f:
                return json.load(f, object_pairs_hook=_reject_duplicate_keys)
        except FileNotFoundError as e:
            logger.error("Ontology store missing", extra={"path": self.path})
            raise OntologyConfigError(f"Ontology store {self.path} not found.") from e
        except json.JSONDecodeError as e:
            logger.error("Ontology store is not valid JSON", extra={"path": self.path, "error": str(e)})
            raise OntologyConfigError(f"Could not parse {self.path}: {e}") from e

    def load_latest(self) -> OntologyVersion:
        store = self._read_store()
        if not isinstance(store, dict):
            raise OntologyConfigError(f"Ontology store {self.path} must be a JSON object.")

        latest_version_number = store.get('latest_version')
        if not latest_version_number:
            raise OntologyConfigError(f"'latest_version' key missing in {self.path}")

        versions = store.get('versions', [])
        if not isinstance(versions, list):
            raise OntologyConfigError(f"'versions' in {self.path} must be a list.")
        if not all(isinstance(v, dict) for v in versions):
            raise OntologyConfigError(f"Every entry of 'versions' in {self.path} must be an object.")

        latest_data = next((v for v in versions if v.get('version') == latest_version_number), None)
        if latest_data is None:
            raise OntologyConfigError(f"Ontology version {latest_version_number} not found in {self.path}.")

        try:
            version = OntologyVersion.model_validate(latest_data)
        except ValidationError as e:
            logger.error("Ontology version failed validation", extra={"version": latest_version_number, "error": str(e)})
            raise OntologyConfigError(f"Ontology version {latest_version_number} is invalid: {e}") from e

        logger.info(
            "Loaded ontology",
            extra={"version": version.version, "rules": len(version.ontology.rules)},
        )
        return version

    def load_config(self) -> OntologyConfig:
        return self.load_latest().ontology

    def save(self, config: OntologyConfig) -> OntologyVersion:
        """Appends `config` as a new version and makes it the latest one."""
        if os.path.exists(self.path):
            store = self._read_store()
        else:
            store = {"versions": [], "latest_version": 0}
        if not isinstance(store, dict) or not isinstance(store.get('versions', []), list) \
                or not isinstance(store.get('latest_version', 0), int):
            raise OntologyConfigError(f"Ontology store {self.path} is malformed; refusing to overwrite it.")

        new_version = OntologyVersion(
            version=store.get('latest_version', 0) + 1,
            created_at=datetime.datetime.now(datetime.timezone.utc).isoformat(),
            ontology=config,
        )
        store.setdefault('versions', []).append(new_version.model_dump(mode="json", by_alias=True))
        store['latest_version'] = new_version.version

        with open(self.path, 'w') as f:
            json.dump(store, f, indent=2)

        logger.info("Saved ontology", extra={"version": new_version.version})
        return new_version
