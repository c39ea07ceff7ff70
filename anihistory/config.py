# anihistory/config.py
import json
import os
import logging

from anihistory.repo import open_repo
from anihistory.service import AnimeCatalog, UserDirectory, ListStore, Store

DEFAULT_CFG = {
    "database": None,  # None -> in-memory collections
    "score_min": 0,
    "score_max": 100,
    "cascade_deletes": False,
    "lock_timeout": 5.0,
    "logging_level": "INFO"
}

def load_config(path="config.json"):
    if not os.path.exists(path):
        print("config.json not found, using defaults:", DEFAULT_CFG)
        return DEFAULT_CFG.copy()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
    except (OSError, ValueError) as e:
        print("Failed to read config.json:", e, ", using defaults")
        return DEFAULT_CFG.copy()
    merged = DEFAULT_CFG.copy()
    merged.update(cfg)
    return merged

def configure_logging(level_name: str):
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def create_store(cfg=None) -> Store:
    """Wire the anime catalog, user directory and list store from a config dict."""
    merged = DEFAULT_CFG.copy()
    merged.update(cfg or {})
    logger = logging.getLogger(__name__)
    logger.info("Opening store with config: %s", {k: v for k, v in merged.items() if k != "database"})

    db = merged["database"]
    score_range = (merged["score_min"], merged["score_max"])
    timeout = float(merged["lock_timeout"])
    anime = AnimeCatalog(open_repo("anime", db), score_range=score_range, lock_timeout=timeout)
    users = UserDirectory(open_repo("users", db), lock_timeout=timeout)
    lists = ListStore(anime, users, open_repo("lists", db), score_range=score_range,
                      cascade_deletes=merged["cascade_deletes"], lock_timeout=timeout)
    return Store(anime, users, lists)
