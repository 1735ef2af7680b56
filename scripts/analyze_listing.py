#!/usr/bin/env python3
"""Batch runner: analyze folders of item photos and save them as listings.

Each sub-folder of `--items_dir` is one item; its JPG/PNG files are the photos,
in name order. For every item the photos are normalized, sent to the provider
configured in the settings file, and saved into the JSON history.

Produces `summary.yaml` under `--out_root` with the result per item.

Credentials come from the provider's environment variable (for example
`OPENROUTER_API_KEY`); `RESALE_PROVIDER` / `RESALE_MODEL` override the
settings file.
"""

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

import yaml

from resale_assistant.review import ReviewSession, ReviewState
from resale_assistant.settings import SettingsStore
from resale_assistant.storage.history import JsonHistoryStore

_EXTS = {".jpg", ".jpeg", ".png", ".webp"}


def _iter_photos(item_dir: Path) -> list[Path]:
    return sorted(p for p in item_dir.iterdir() if p.is_file() and p.suffix.lower() in _EXTS)


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--items_dir", type=str, default="assets/items")
    ap.add_argument("--out_root", type=str, default="outputs/listings")
    ap.add_argument("--settings", type=str, default="~/.resale_assistant/settings.yaml")
    ap.add_argument("--context", type=str, default=None)
    ap.add_argument("--no_save", action="store_true")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    items_dir = Path(args.items_dir).expanduser().resolve()
    if not items_dir.is_dir():
        raise SystemExit(f"--items_dir is not a directory: {items_dir}")
    out_root = Path(args.out_root).expanduser().resolve()
    out_root.mkdir(parents=True, exist_ok=True)

    settings_store = SettingsStore(Path(args.settings).expanduser())
    settings, _ = settings_store.load()
    if os.environ.get("RESALE_PROVIDER"):
        settings = settings.with_provider(os.environ["RESALE_PROVIDER"])
    if os.environ.get("RESALE_MODEL"):
        settings = replace(settings, model=os.environ["RESALE_MODEL"])

    history = JsonHistoryStore(out_root / "history.json")
    item_dirs = sorted(p for p in items_dir.iterdir() if p.is_dir())
    if not item_dirs:
        raise SystemExit(f"No item folders found under: {items_dir}")

    summary: list[dict[str, object]] = []
    failures = 0
    for item_dir in item_dirs:
        photos = _iter_photos(item_dir)
        print(f"Analysing {item_dir.name} ({len(photos)} photos)")
        session = ReviewSession(settings, history, usage_store=settings_store)
        session.add_photos([p.read_bytes() for p in photos])
        draft = session.analyze(args.context) if session.error is None else None
        if draft is None:
            failures += 1
            err = session.error
            message = f"{err.kind}: {err.message}" if err else "no result"
            print(f"[ERROR] {item_dir.name}: {message}", file=sys.stderr)
            summary.append({"item": item_dir.name, "error": message})
            continue

        entry: dict[str, object] = {
            "item": item_dir.name,
            "photos": len(draft.photos),
            "description": draft.description,
            "price": draft.price,
            "price_new": draft.price_new,
            "currency": draft.currency,
            "details": dict(draft.details),
            "missing": draft.missing_fields(),
            "similar_links": list(draft.similar_links),
        }
        if not args.no_save:
            saved = session.save()
            entry["id"] = saved.id if saved is not None else None
            if session.state is not ReviewState.SAVED:
                failures += 1
        summary.append(entry)

    (out_root / "summary.yaml").write_text(
        yaml.safe_dump({"items": summary}, sort_keys=False, allow_unicode=True),
        encoding="utf-8",
    )

    if failures:
        print(f"Completed with {failures} failures.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
