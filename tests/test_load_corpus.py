"""
Tests for corpus import and the load_corpus script.
"""
import json
import sys
from pathlib import Path

import pytest

from conftest import SAMPLE_CORPUS, SAMPLE_DESCRIPTIONS

sys.path.insert(0, str(Path(__file__).parent.parent / "scripts"))

import load_corpus  # noqa: E402


class TestImportCorpus:
    def test_import(self, fresh_client):
        import app as app_module

        with app_module.get_db() as conn:
            result = app_module.import_corpus(conn, SAMPLE_CORPUS, descriptions=SAMPLE_DESCRIPTIONS)
            capital = conn.execute("SELECT * FROM properties WHERE name = 'capital'").fetchone()
            texts = [r["text"] for r in conn.execute(
                "SELECT text FROM sentences WHERE property_id = ? ORDER BY id", (capital["id"],)
            ).fetchall()]

        assert result == {"properties": 2, "sentences": 15, "skipped": []}
        assert capital["sentence_count"] == 3
        assert capital["description"] == "The capital of a country."
        assert capital["range_link"] == "http://dbpedia.org/ontology/City"
        assert texts == SAMPLE_CORPUS["capital"]["texts"]

    def test_existing_property_skipped(self, fresh_client):
        import app as app_module

        with app_module.get_db() as conn:
            app_module.import_corpus(conn, SAMPLE_CORPUS)
            result = app_module.import_corpus(conn, SAMPLE_CORPUS)
        assert result["properties"] == 0
        assert sorted(result["skipped"]) == ["birthPlace", "capital"]

    def test_replace(self, auth_client, seeded):
        import app as app_module

        client, _ = auth_client
        pid = seeded["properties"]["capital"]
        sid = seeded["sentences"]["capital"][0]
        client.put("/api/labels", json={"sentence_id": sid, "property_id": pid, "label": "n"})

        with app_module.get_db() as conn:
            result = app_module.import_corpus(conn, {"capital": SAMPLE_CORPUS["capital"]}, replace=True)
            labels = conn.execute("SELECT COUNT(*) FROM labels").fetchone()[0]
            properties = conn.execute("SELECT COUNT(*) FROM properties").fetchone()[0]

        assert result["properties"] == 1
        assert labels == 0
        assert properties == 1
        assert client.get("/api/profile").json()["total_labels"] == 0

    def test_malformed_entry_skipped(self, fresh_client):
        import app as app_module

        corpus = {"broken": {"domain": "A"}, "fine": {"domain": "A", "range": "B", "texts": ["x y", "  "]}}
        with app_module.get_db() as conn:
            result = app_module.import_corpus(conn, corpus)
        assert result == {"properties": 1, "sentences": 1, "skipped": ["broken"]}

    def test_rejects_non_object(self, fresh_client):
        import app as app_module

        with app_module.get_db() as conn:
            with pytest.raises(ValueError):
                app_module.import_corpus(conn, ["not", "a", "corpus"])


class TestScript:
    def test_main(self, tmp_path, capsys, app):
        import app as app_module

        corpus_path = tmp_path / "corpus.json"
        corpus_path.write_text(json.dumps(SAMPLE_CORPUS))
        descriptions_path = tmp_path / "descriptions.json"
        descriptions_path.write_text(json.dumps(SAMPLE_DESCRIPTIONS))
        db_path = tmp_path / "labels.db"

        previous = app_module.DB_PATH
        try:
            result = load_corpus.main([
                str(corpus_path),
                "--descriptions", str(descriptions_path),
                "--db", str(db_path),
            ])
        finally:
            app_module.DB_PATH = previous

        assert result["sentences"] == 15
        assert db_path.exists()
        out = capsys.readouterr().out
        assert "Loaded capital (3 sentences)" in out
        assert "Sentences: 15" in out
