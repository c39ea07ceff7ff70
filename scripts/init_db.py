# scripts/init_db.py
import os
import sys

from anihistory.repo import init_schema

DB = sys.argv[1] if len(sys.argv) > 1 else os.path.join("data", "anihistory.db")
init_schema(DB)
print("initialized db at", DB)
