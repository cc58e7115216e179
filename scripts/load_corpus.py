#!/usr/bin/env python3
"""
Load a property/sentence corpus into the labeler database.

The corpus is a JSON object keyed by property name:

    {
      "birthPlace": {"domain": "Person", "range": "Place", "texts": ["...", "..."]},
      ...
    }

An optional descriptions file is keyed by full property IRI and supplies
"description" plus reference links in "domain" and "range" lists.

Usage:
    python scripts/load_corpus.py data/corpus.json
    python scripts/load_corpus.py data/corpus.json --descriptions data/descriptions.json
    python scripts/load_corpus.py data/corpus.json --replace
    python scripts/load_corpus.py data/corpus.json --db /tmp/labels.db
"""

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import app as app_module  # noqa: E402


def load_json(path: Path):
    with open(path) as f:
        return json.load(f)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Load a sentence corpus into the labeler database")
    parser.add_argument("corpus", type=Path, help="Corpus JSON keyed by property name")
    parser.add_argument(
        "--descriptions",
        type=Path,
        help="Property descriptions JSON keyed by property IRI",
    )
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Delete existing labels, sentences and properties first",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help=f"Database file (default: {app_module.DB_PATH})",
    )
    parser.add_argument(
        "--iri-prefix",
        default=app_module.DEFAULT_IRI_PREFIX,
        help="Prefix joined with the property name to look up descriptions",
    )
    args = parser.parse_args(argv)

    if args.db is not None:
        app_module.DB_PATH = args.db

    corpus = load_json(args.corpus)
    descriptions = load_json(args.descriptions) if args.descriptions else None

    print(f"Importing {args.corpus} into {app_module.DB_PATH}...")
    app_module.init_db()
    with app_module.get_db() as conn:
        result = app_module.import_corpus(
            conn,
            corpus,
            descriptions=descriptions,
            replace=args.replace,
            iri_prefix=args.iri_prefix,
        )

    print(f"  Properties: {result['properties']}")
    print(f"  Sentences: {result['sentences']}")
    if result["skipped"]:
        print(f"  Skipped: {', '.join(result['skipped'])}")
    return result


if __name__ == "__main__":
    main()
