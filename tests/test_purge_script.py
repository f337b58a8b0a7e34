"""Command-line sweep of expired access tokens."""

import importlib.util
import sys
from pathlib import Path

# Import the script from its non-package location
_SCRIPT_PATH = Path(__file__).resolve().parent.parent / "scripts" / "purge_expired_tokens.py"
_spec = importlib.util.spec_from_file_location("purge_expired_tokens", _SCRIPT_PATH)
purge_script = importlib.util.module_from_spec(_spec)
sys.modules["purge_expired_tokens"] = purge_script
_spec.loader.exec_module(purge_script)


class TestPurgeScript:
    def test_dry_run_reports_no_removal_count(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["purge_expired_tokens.py", "--dry-run"])

        purge_script.main()

        out = capsys.readouterr().out
        assert "[DRY RUN]" in out
        assert "Removed" not in out

    def test_run_reports_removal_count(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["purge_expired_tokens.py"])

        purge_script.main()

        out = capsys.readouterr().out
        assert "Removed 0 expired token(s)" in out
        assert "[DRY RUN]" not in out
