# /run_analysis.py

import argparse
import json
import sys

from dotenv import load_dotenv

from derivation.config import settings
from derivation.database import Neo4jMarkerStore
from derivation.exceptions import DerivationError
from derivation.ontology import OntologyStore
from derivation.service import DerivationService
from derivation.slot_mapper import HttpSlotDefinitionLookup

def main():
    """
    Analyzes which markers of a scene can be materialized and prints the
    preview as JSON. Nothing is written.
    """
    load_dotenv()

    parser = argparse.ArgumentParser(description="Preview derived-marker materialization for a scene.")
    parser.add_argument("scene_id", help="Scene whose markers should be analyzed.")
    parser.add_argument("--ontology", default=settings.ONTOLOGY_STORE_PATH, help="Path to the ontology store.")
    args = parser.parse_args()

    try:
        ontology = OntologyStore(args.ontology).load_config()
        store = Neo4jMarkerStore()
    except (DerivationError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        service = DerivationService(store, HttpSlotDefinitionLookup(), ontology)
        analysis = service.analyze_scene(args.scene_id)
    except DerivationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(json.dumps(analysis.model_dump(by_alias=True), indent=2))
    return 0


if __name__ == '__main__':
    sys.exit(main())
