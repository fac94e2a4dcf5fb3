# /tests/test_stores.py

import unittest
from unittest.mock import MagicMock

from neo4j.exceptions import ServiceUnavailable

import sys
import os
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from derivation.database import Neo4jMarkerStore
from derivation.exceptions import DuplicateDerivationError, MarkerNotFoundError, MarkerStoreError
from derivation.memory_store import InMemoryMarkerStore
from derivation.models import DerivationEdge, NewDerivedMarker, StoredMarker, StoredSlot


def record(rule_id, tag_id, parent_rule_id=None, depth=0):
    return NewDerivedMarker(
        rule_id=rule_id,
        depth=depth,
        parent_rule_id=parent_rule_id,
        scene_id="77",
        seconds=5.0,
        primary_tag_id=tag_id,
        tag_ids=["9001"],
        slots=[StoredSlot(slot_definition_id="d1", slot_label="giver", performer_id="1", order=0)],
    )


class TestInMemoryMarkerStore(unittest.TestCase):

    def setUp(self):
        self.store = InMemoryMarkerStore(
            [
                StoredMarker(id="10", scene_id="77", seconds=30.0, primary_tag_id="100"),
                StoredMarker(id="11", scene_id="77", seconds=5.0, primary_tag_id="200"),
                StoredMarker(id="12", scene_id="88", seconds=1.0, primary_tag_id="100"),
            ],
            tag_names={"100": "Blowjob"},
            edges=[DerivationEdge(source_marker_id="10", derived_marker_id="11", rule_id="100->200", depth=0)],
        )

    def test_scene_markers_are_sorted_and_carry_sources(self):
        markers = self.store.get_scene_markers("77")

        self.assertEqual([m.id for m in markers], ["11", "10"])
        self.assertEqual(markers[0].derived_from, ["10"])
        self.assertEqual(markers[1].derived_from, [])

    def test_existing_rule_ids(self):
        self.assertEqual(self.store.get_existing_rule_ids("10"), {"100->200"})
        self.assertEqual(self.store.get_existing_rule_ids("12"), set())

    def test_returned_markers_are_copies(self):
        self.store.get_marker("10").tag_ids.append("oops")

        self.assertEqual(self.store.get_marker("10").tag_ids, [])

    def test_create_for_missing_source_raises(self):
        with self.assertRaises(MarkerNotFoundError):
            self.store.create_derived_markers("404", [record("1->2", "2")])

    def test_duplicate_rule_is_rejected_atomically(self):
        with self.assertRaises(DuplicateDerivationError) as ctx:
            self.store.create_derived_markers("10", [record("100->300", "300"), record("100->200", "200")])

        self.assertEqual(ctx.exception.rule_ids, {"100->200"})
        self.assertEqual(len(self.store.get_scene_markers("77")), 2)
        self.assertEqual(len(self.store.edges), 1)

    def test_replace_primary_tag(self):
        slots = [StoredSlot(slot_definition_id="x", slot_label="performer", order=0)]

        updated = self.store.replace_primary_tag("12", "300", slots)

        self.assertEqual(updated.primary_tag_id, "300")
        self.assertEqual(updated.slots, slots)
        with self.assertRaises(MarkerNotFoundError):
            self.store.replace_primary_tag("404", "300", [])


class TestNeo4jMarkerStore(unittest.TestCase):

    def setUp(self):
        """Mock the driver. We don't want to touch the actual DB in a unit test."""
        self.mock_driver = MagicMock()
        self.mock_session = MagicMock()
        self.mock_driver.session.return_value.__enter__.return_value = self.mock_session
        self.store = Neo4jMarkerStore(driver=self.mock_driver)

    def test_get_scene_markers_maps_rows(self):
        self.mock_session.run.return_value.data.return_value = [{
            "marker": {"id": "5", "sceneId": "77", "seconds": 3.0, "primaryTagId": "100", "tagIds": ["9001"]},
            "slots": [
                {"slotDefinitionId": "d2", "slotLabel": "receiver", "performerId": "2", "order": 1},
                {"slotDefinitionId": "d1", "slotLabel": "giver", "performerId": "1", "order": 0},
            ],
            "derived_from": [],
        }]

        markers = self.store.get_scene_markers("77")

        self.assertEqual(len(markers), 1)
        self.assertEqual(markers[0].primary_tag_id, "100")
        self.assertEqual([s.slot_label for s in markers[0].slots], ["giver", "receiver"])
        _, params = self.mock_session.run.call_args[0]
        self.assertEqual(params, {"scene_id": "77"})

    def test_driver_errors_become_store_errors(self):
        self.mock_session.run.side_effect = ServiceUnavailable("down")

        with self.assertRaises(MarkerStoreError):
            self.store.get_tag_names()

    def test_create_uses_a_single_write_transaction(self):
        self.mock_session.execute_write.return_value = []

        self.store.create_derived_markers("10", [record("100->200", "200")])

        self.mock_session.execute_write.assert_called_once()
        tx_function = self.mock_session.execute_write.call_args[0][0]
        self.assertEqual(tx_function, Neo4jMarkerStore._create_derived_markers_tx)

    def test_transaction_rejects_duplicate_rule_ids(self):
        tx = MagicMock()
        tx.run.return_value.single.side_effect = [{"id": "10"}, {"rule_ids": ["100->200"]}]

        with self.assertRaises(DuplicateDerivationError):
            Neo4jMarkerStore._create_derived_markers_tx(tx, "10", [record("100->200", "200")])

        # Only the two checks ran, no CREATE
        self.assertEqual(tx.run.call_count, 2)

    def test_transaction_creates_markers_and_parent_edges(self):
        tx = MagicMock()
        tx.run.return_value.single.side_effect = [{"id": "10"}, {"rule_ids": []}]
        records = [
            record("100->200", "200"),
            record("200->300", "300", parent_rule_id="100->200", depth=1),
        ]

        created = Neo4jMarkerStore._create_derived_markers_tx(tx, "10", records)

        self.assertEqual([m.primary_tag_id for m in created], ["200", "300"])
        self.assertEqual(created[0].derived_from, ["10"])
        self.assertEqual(created[1].derived_from, ["10", created[0].id])
        # 2 checks + 2 marker creates + 1 parent edge
        self.assertEqual(tx.run.call_count, 5)

    def test_transaction_locks_source_before_duplicate_check(self):
        tx = MagicMock()
        tx.run.return_value.single.side_effect = [{"id": "10"}, {"rule_ids": []}]

        Neo4jMarkerStore._create_derived_markers_tx(tx, "10", [record("100->200", "200")])

        lock_query = tx.run.call_args_list[0][0][0]
        self.assertIn("SET m.derivationVersion", lock_query)
        self.assertEqual(tx.run.call_args_list[0][1], {"id": "10"})
        duplicate_query = tx.run.call_args_list[1][0][0]
        self.assertIn("d.ruleId IN $rule_ids", duplicate_query)

    def test_transaction_requires_source_marker(self):
        tx = MagicMock()
        tx.run.return_value.single.return_value = None

        with self.assertRaises(MarkerNotFoundError):
            Neo4jMarkerStore._create_derived_markers_tx(tx, "404", [record("1->2", "2")])


if __name__ == '__main__':
    unittest.main()
