# /tests/test_ontology.py

import json
import os
import shutil
import tempfile
import unittest

from pydantic import ValidationError

import sys
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from derivation.exceptions import OntologyConfigError
from derivation.models import OntologyConfig, TagOntologyRule
from derivation.ontology import OntologyGraph, OntologyStore


def rule_json(source, derived, slot_mapping=None):
    return {
        "sourceTagId": source,
        "derivedTagId": derived,
        "relationshipType": "implies",
        "slotMapping": slot_mapping or {},
    }


class TestOntologyModels(unittest.TestCase):

    def test_ids_are_normalized_to_strings(self):
        rule = TagOntologyRule.model_validate(rule_json(100, 200))

        self.assertEqual(rule.source_tag_id, "100")
        self.assertEqual(rule.rule_id, "100->200")

    def test_slot_mapping_accepts_entry_list(self):
        rule = TagOntologyRule.model_validate(rule_json("1", "2", [
            {"sourceLabel": "giver", "derivedLabel": "performer"},
            {"sourceLabel": "receiver", "derivedLabel": "receiver"},
        ]))

        self.assertEqual(rule.slot_mapping, {"giver": "performer", "receiver": "receiver"})
        self.assertEqual(list(rule.slot_mapping), ["giver", "receiver"])

    def test_duplicate_slot_mapping_entries_are_rejected(self):
        with self.assertRaises(ValidationError):
            TagOntologyRule.model_validate(rule_json("1", "2", [
                {"sourceLabel": "giver", "derivedLabel": "a"},
                {"sourceLabel": "giver", "derivedLabel": "b"},
            ]))

    def test_unknown_relationship_type_is_rejected(self):
        data = rule_json("1", "2")
        data["relationshipType"] = "excludes"

        with self.assertRaises(ValidationError):
            TagOntologyRule.model_validate(data)

    def test_missing_slot_mapping_is_rejected(self):
        data = rule_json("1", "2")
        del data["slotMapping"]

        with self.assertRaises(ValidationError):
            TagOntologyRule.model_validate(data)

    def test_duplicate_edges_are_rejected(self):
        with self.assertRaises(ValidationError):
            OntologyConfig.model_validate({"derivedMarkers": [rule_json("1", "2"), rule_json("1", "2")]})

    def test_depth_must_be_positive(self):
        with self.assertRaises(ValidationError):
            OntologyConfig.model_validate({"derivedMarkers": [], "maxDerivationDepth": 0})

    def test_depth_defaults_to_three(self):
        config = OntologyConfig.model_validate({"derivedMarkers": []})

        self.assertEqual(config.max_derivation_depth, 3)
        self.assertIsNone(config.derived_marker_tag_id)


class TestOntologyGraph(unittest.TestCase):

    def setUp(self):
        self.config = OntologyConfig.model_validate({"derivedMarkers": [
            rule_json("1", "2"),
            rule_json("2", "3"),
            rule_json("1", "4"),
        ]})
        self.graph = OntologyGraph.from_config(self.config)

    def test_rules_are_grouped_by_source_in_config_order(self):
        self.assertEqual([r.derived_tag_id for r in self.graph.rules_from("1")], ["2", "4"])
        self.assertEqual(self.graph.source_tag_ids(), ["1", "2"])

    def test_unknown_tag_has_no_rules(self):
        self.assertEqual(self.graph.rules_from("999"), [])
        self.assertNotIn("999", self.graph.source_tag_ids())

    def test_returned_rule_list_is_a_copy(self):
        self.graph.rules_from("1").clear()

        self.assertEqual(len(self.graph.rules_from("1")), 2)


class TestOntologyStore(unittest.TestCase):

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmp_dir, "ontology_store.json")
        self.store = OntologyStore(self.path)

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def write(self, content):
        with open(self.path, 'w') as f:
            f.write(content if isinstance(content, str) else json.dumps(content))

    def test_loads_latest_version(self):
        # --- Arrange ---
        self.write({
            "versions": [
                {"version": 1, "createdAt": "2024-01-01T00:00:00", "ontology": {"derivedMarkers": [rule_json("1", "2")]}},
                {"version": 2, "createdAt": "2024-02-01T00:00:00", "ontology": {
                    "derivedMarkers": [rule_json("1", "3")], "maxDerivationDepth": 5}},
            ],
            "latest_version": 2,
        })

        # --- Act ---
        config = self.store.load_config()

        # --- Assert ---
        self.assertEqual(config.max_derivation_depth, 5)
        self.assertEqual([r.rule_id for r in config.rules], ["1->3"])

    def test_missing_file_is_an_error(self):
        with self.assertRaises(OntologyConfigError):
            self.store.load_config()

    def test_invalid_json_is_an_error(self):
        self.write("{not json")

        with self.assertRaises(OntologyConfigError):
            self.store.load_config()

    def test_duplicate_json_keys_are_an_error(self):
        self.write('{"latest_version": 1, "latest_version": 2, "versions": []}')

        with self.assertRaises(OntologyConfigError):
            self.store.load_config()

    def test_unknown_latest_version_is_an_error(self):
        self.write({"versions": [], "latest_version": 3})

        with self.assertRaises(OntologyConfigError):
            self.store.load_config()

    def test_top_level_list_is_an_error(self):
        self.write([{"version": 1}])

        with self.assertRaises(OntologyConfigError):
            self.store.load_latest()

    def test_versions_must_be_a_list(self):
        self.write({"versions": {"1": {}}, "latest_version": 1})

        with self.assertRaises(OntologyConfigError):
            self.store.load_latest()

    def test_non_object_version_entry_is_an_error(self):
        self.write({"versions": [1, "two"], "latest_version": 1})

        with self.assertRaises(OntologyConfigError):
            self.store.load_latest()

    def test_save_refuses_to_overwrite_malformed_store(self):
        self.write([{"version": 1}])
        config = OntologyConfig.model_validate({"derivedMarkers": []})

        with self.assertRaises(OntologyConfigError):
            self.store.save(config)

        with open(self.path) as f:
            self.assertEqual(json.load(f), [{"version": 1}])

    def test_invalid_rules_are_an_error(self):
        bad = rule_json("1", "2")
        bad["relationshipType"] = "excludes"
        self.write({
            "versions": [{"version": 1, "createdAt": "2024-01-01T00:00:00", "ontology": {"derivedMarkers": [bad]}}],
            "latest_version": 1,
        })

        with self.assertRaises(OntologyConfigError):
            self.store.load_config()

    def test_save_appends_versions(self):
        config = OntologyConfig.model_validate({"derivedMarkers": [rule_json("1", "2", {"giver": "giver"})]})

        first = self.store.save(config)
        second = self.store.save(config)

        self.assertEqual((first.version, second.version), (1, 2))
        with open(self.path) as f:
            raw = json.load(f)
        self.assertEqual(raw["latest_version"], 2)
        self.assertEqual(len(raw["versions"]), 2)
        self.assertEqual(raw["versions"][0]["ontology"]["derivedMarkers"][0]["slotMapping"], {"giver": "giver"})
        self.assertEqual(self.store.load_config(), config)


if __name__ == '__main__':
    unittest.main()
