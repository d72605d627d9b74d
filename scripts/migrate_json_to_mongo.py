"""
Imports a realtime-database JSON export into MongoDB.

Usage: python scripts/migrate_json_to_mongo.py export.json

The export is a single object keyed by collection, e.g.
{"products": {"<id>": {...}}, "sales": {"<id>": {...}}, "token": "..."}
A root-level token string lands at WHATSAPP_TOKEN_PATH.
Existing ids are kept so re-running the import overwrites rather than duplicates.
"""
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

from pos_admin import config
from pos_admin.store import DocumentStore, get_store

logger = logging.getLogger("migrate_json_to_mongo")

COLLECTIONS = ("products", "sales", "config")


def read_json(path: Path):
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("Could not read %s: %s", path, exc)
        return {}


def to_docs(value: Any) -> Dict[str, Dict[str, Any]]:
    # Array-shaped exports use list positions as keys; gaps come through as null.
    if isinstance(value, list):
        return {str(i): row for i, row in enumerate(value) if isinstance(row, dict)}
    if isinstance(value, dict):
        return {str(k): row for k, row in value.items() if isinstance(row, dict)}
    return {}


def import_collection(store: DocumentStore, name: str, value: Any) -> int:
    count = 0
    for doc_id, row in to_docs(value).items():
        store.set(f"{name}/{doc_id}", row)
        count += 1
    return count


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    args = sys.argv[1:] if argv is None else argv
    if not args:
        raise SystemExit("Usage: migrate_json_to_mongo.py <export.json>")

    data = read_json(Path(args[0]))
    if not isinstance(data, dict) or not data:
        raise SystemExit(f"Nothing to import from {args[0]}.")

    try:
        store = get_store()
    except RuntimeError as exc:
        raise SystemExit(str(exc))

    for name in COLLECTIONS:
        count = import_collection(store, name, data.get(name))
        logger.info("%s=%s", name, count)

    token = data.get("token")
    if isinstance(token, str) and token.strip():
        store.set(config.whatsapp_token_path(), token.strip())
        logger.info("token imported to %s", config.whatsapp_token_path())

    logger.info("Migration completed.")


if __name__ == "__main__":
    main()
