# /derivation/database.py

from abc import ABC, abstractmethod
import uuid
from neo4j import GraphDatabase
from neo4j.exceptions import DriverError, Neo4jError
from typing import List, Dict, Any, Optional, Set

from derivation.config import settings
from derivation.exceptions import DuplicateDerivationError, MarkerNotFoundError, MarkerStoreError
from derivation.logger import get_logger
from derivation.models import NewDerivedMarker, StoredMarker, StoredSlot

logger = get_logger(__name__)


class MarkerStore(ABC):
    """
    An abstract base class defining the storage operations the derivation
    engine needs. Writes of derived markers must be atomic per call.
    """
    @abstractmethod
    def get_scene_markers(self, scene_id: str) -> List[StoredMarker]:
        pass

    @abstractmethod
    def get_marker(self, marker_id: str) -> Optional[StoredMarker]:
        pass

    @abstractmethod
    def get_existing_rule_ids(self, marker_id: str) -> Set[str]:
        """Rule ids of the derivation edges already recorded from this marker."""
        pass

    @abstractmethod
    def get_tag_names(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def create_derived_markers(self, source_marker_id: str, records: List[NewDerivedMarker]) -> List[StoredMarker]:
        """
        Creates one marker plus its slots and derivation edge(s) per record,
        all in one transaction. Raises DuplicateDerivationError if the source
        already has an edge for any of the records' rule ids.
        """
        pass

    @abstractmethod
    def replace_primary_tag(self, marker_id: str, tag_id: str, slots: List[StoredSlot]) -> StoredMarker:
        pass

    @abstractmethod
    def close(self):
        pass


def _to_stored_marker(node: Dict[str, Any], slots: List[Dict[str, Any]], derived_from: List[str]) -> StoredMarker:
    return StoredMarker(
        id=node["id"],
        scene_id=node["sceneId"],
        seconds=node["seconds"],
        end_seconds=node.get("endSeconds"),
        primary_tag_id=node.get("primaryTagId"),
        tag_ids=list(node.get("tagIds") or []),
        slots=sorted((StoredSlot.model_validate(slot) for slot in slots), key=lambda s: s.order),
        derived_from=list(derived_from),
    )


_MARKER_QUERY = """
MATCH (m:Marker) WHERE {where}
OPTIONAL MATCH (m)-[:HAS_SLOT]->(s:MarkerSlot)
WITH m, collect(s {{.*}}) AS slots
OPTIONAL MATCH (src:Marker)-[:DERIVED]->(m)
RETURN m {{.*}} AS marker, slots, collect(DISTINCT src.id) AS derived_from
ORDER BY marker.seconds
"""


class Neo4jMarkerStore(MarkerStore):
    """
    Concrete implementation of the MarkerStore for Neo4j.

    Graph layout:
        (:Marker {id, sceneId, seconds, endSeconds, primaryTagId, tagIds, derivationVersion})
        (:Marker)-[:HAS_SLOT]->(:MarkerSlot {slotDefinitionId, slotLabel, performerId, order})
        (:Marker)-[:DERIVED {ruleId, depth}]->(:Marker)
        (:Tag {id, name})
    """
    def __init__(self, driver=None):
        if driver is None:
            uri = settings.NEO4J_URI
            user = settings.NEO4J_USERNAME
            password = settings.NEO4J_PASSWORD
            if not all([uri, user, password]):
                raise ValueError("Neo4j credentials not found in .env file.")
            driver = GraphDatabase.driver(uri, auth=(user, password))
        self._driver = driver

    def ensure_constraints(self):
        self._run("CREATE CONSTRAINT marker_id IF NOT EXISTS FOR (m:Marker) REQUIRE m.id IS UNIQUE")
        logger.info("Neo4j marker constraints ensured.")

    def _run(self, query: str, params: Dict = None) -> List[Dict[str, Any]]:
        try:
            with self._driver.session() as session:
                result = session.run(query, params or {})
                return result.data()
        except (Neo4jError, DriverError) as e:
            logger.error("Neo4j query failed", extra={"error": str(e)}, exc_info=True)
            raise MarkerStoreError(f"Neo4j query failed: {e}") from e

    def _write(self, tx_function, *args):
        try:
            with self._driver.session() as session:
                return session.execute_write(tx_function, *args)
        except (Neo4jError, DriverError) as e:
            logger.error("Neo4j write transaction failed", extra={"error": str(e)}, exc_info=True)
            raise MarkerStoreError(f"Neo4j write failed: {e}") from e

    def get_scene_markers(self, scene_id: str) -> List[StoredMarker]:
        rows = self._run(_MARKER_QUERY.format(where="m.sceneId = $scene_id"), {"scene_id": scene_id})
        return [_to_stored_marker(row["marker"], row["slots"], row["derived_from"]) for row in rows]

    def get_marker(self, marker_id: str) -> Optional[StoredMarker]:
        rows = self._run(_MARKER_QUERY.format(where="m.id = $marker_id"), {"marker_id": marker_id})
        if not rows:
            return None
        row = rows[0]
        return _to_stored_marker(row["marker"], row["slots"], row["derived_from"])

    def get_existing_rule_ids(self, marker_id: str) -> Set[str]:
        rows = self._run(
            "MATCH (:Marker {id: $marker_id})-[d:DERIVED]->() RETURN collect(DISTINCT d.ruleId) AS rule_ids",
            {"marker_id": marker_id},
        )
        return set(rows[0]["rule_ids"]) if rows else set()

    def get_tag_names(self) -> Dict[str, str]:
        rows = self._run("MATCH (t:Tag) RETURN t.id AS id, t.name AS name")
        return {str(row["id"]): row["name"] for row in rows}

    def create_derived_markers(self, source_marker_id: str, records: List[NewDerivedMarker]) -> List[StoredMarker]:
        created = self._write(self._create_derived_markers_tx, source_marker_id, records)
        logger.info(
            "Materialized derived markers",
            extra={"source_marker_id": source_marker_id, "count": len(created)},
        )
        return created

    @staticmethod
    def _create_derived_markers_tx(tx, source_marker_id: str, records: List[NewDerivedMarker]) -> List[StoredMarker]:
        # Writing to the source takes its write lock, so concurrent materializations
        # of the same marker serialize here and the second one sees the first's edges.
        source = tx.run(
            """
            MATCH (m:Marker {id: $id})
            SET m.derivationVersion = coalesce(m.derivationVersion, 0) + 1
            RETURN m.id AS id
            """,
            id=source_marker_id,
        ).single()
        if source is None:
            raise MarkerNotFoundError(source_marker_id)

        rule_ids = [record.rule_id for record in records]
        duplicates = tx.run(
            """
            MATCH (:Marker {id: $id})-[d:DERIVED]->()
            WHERE d.ruleId IN $rule_ids
            RETURN collect(DISTINCT d.ruleId) AS rule_ids
            """,
            id=source_marker_id, rule_ids=rule_ids,
        ).single()["rule_ids"]
        if duplicates:
            raise DuplicateDerivationError(source_marker_id, duplicates)

        created: List[StoredMarker] = []
        marker_id_by_rule: Dict[str, str] = {}
        for record in records:
            marker_id = str(uuid.uuid4())
            slots = [slot.model_dump(by_alias=True) for slot in record.slots]
            tx.run(
                """
                MATCH (src:Marker {id: $source_id})
                CREATE (m:Marker {
                    id: $id, sceneId: $scene_id, seconds: $seconds, endSeconds: $end_seconds,
                    primaryTagId: $primary_tag_id, tagIds: $tag_ids
                })
                CREATE (src)-[:DERIVED {ruleId: $rule_id, depth: $depth}]->(m)
                WITH m
                UNWIND $slots AS slot
                CREATE (m)-[:HAS_SLOT]->(s:MarkerSlot)
                SET s = slot
                """,
                source_id=source_marker_id, id=marker_id, scene_id=record.scene_id,
                seconds=record.seconds, end_seconds=record.end_seconds,
                primary_tag_id=record.primary_tag_id, tag_ids=record.tag_ids,
                rule_id=record.rule_id, depth=record.depth, slots=slots,
            )
            derived_from = [source_marker_id]

            parent_id = marker_id_by_rule.get(record.parent_rule_id)
            if parent_id is not None:
                tx.run(
                    """
                    MATCH (p:Marker {id: $parent_id}), (m:Marker {id: $id})
                    CREATE (p)-[:DERIVED {ruleId: $rule_id, depth: $depth}]->(m)
                    """,
                    parent_id=parent_id, id=marker_id, rule_id=record.rule_id, depth=record.depth,
                )
                derived_from.append(parent_id)

            marker_id_by_rule[record.rule_id] = marker_id
            created.append(StoredMarker(
                id=marker_id,
                scene_id=record.scene_id,
                seconds=record.seconds,
                end_seconds=record.end_seconds,
                primary_tag_id=record.primary_tag_id,
                tag_ids=record.tag_ids,
                slots=record.slots,
                derived_from=derived_from,
            ))
        return created

    def replace_primary_tag(self, marker_id: str, tag_id: str, slots: List[StoredSlot]) -> StoredMarker:
        self._write(self._replace_primary_tag_tx, marker_id, tag_id, slots)
        marker = self.get_marker(marker_id)
        if marker is None:
            raise MarkerNotFoundError(marker_id)
        return marker

    @staticmethod
    def _replace_primary_tag_tx(tx, marker_id: str, tag_id: str, slots: List[StoredSlot]):
        found = tx.run(
            """
            MATCH (m:Marker {id: $id})
            SET m.primaryTagId = $tag_id,
                m.tagIds = [t IN coalesce(m.tagIds, []) WHERE t <> $tag_id]
            RETURN m.id AS id
            """,
            id=marker_id, tag_id=tag_id,
        ).single()
        if found is None:
            raise MarkerNotFoundError(marker_id)

        tx.run("MATCH (:Marker {id: $id})-[:HAS_SLOT]->(s:MarkerSlot) DETACH DELETE s", id=marker_id)
        tx.run(
            """
            MATCH (m:Marker {id: $id})
            UNWIND $slots AS slot
            CREATE (m)-[:HAS_SLOT]->(s:MarkerSlot)
            SET s = slot
            """,
            id=marker_id, slots=[slot.model_dump(by_alias=True) for slot in slots],
        )

    def close(self):
        self._driver.close()
