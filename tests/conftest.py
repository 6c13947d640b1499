import dataclasses
import os
import sys

import pytest

# Ensure project root is importable (so `import asr` and `import cli` work without installing).
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from asr import db, settings as settings_mod  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite event log."""
    isolated = dataclasses.replace(settings_mod.settings, db_path=str(tmp_path / "asr.db"), enable_email=False)
    monkeypatch.setattr(db, "settings", isolated)
    db.init_db()
    return isolated
