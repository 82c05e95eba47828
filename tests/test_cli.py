"""Tests for the ``strata`` command line."""

import json

from strata import MemorySystem
from strata.__main__ import main


def _json(capsys):
    return json.loads(capsys.readouterr().out)


class TestCli:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage: strata" in capsys.readouterr().out

    def test_init(self, tmp_path, capsys):
        data_dir = tmp_path / "data"
        assert main(["init", "--data-dir", str(data_dir)]) == 0
        assert "Initialized strata data directory" in capsys.readouterr().out
        assert (data_dir / "strata.db").exists()

    def test_stats(self, tmp_path, capsys):
        assert main(["stats", "--data-dir", str(tmp_path)]) == 0
        out = _json(capsys)
        assert out["tables"]["semantic_patterns"] == 0

    def test_consolidate(self, tmp_path, capsys):
        with MemorySystem(data_dir=tmp_path) as memory:
            for _ in range(10):
                memory.record_event("org-1", "post_success", platform="instagram")
        assert main(["consolidate", "org-1", "--data-dir", str(tmp_path)]) == 0
        out = _json(capsys)
        assert out["org-1"]["patterns_detected"] >= 1
        assert out["org-1"]["dry_run"] is False

    def test_consolidate_failure_exit_code(self, tmp_path, capsys):
        assert main(["consolidate", " ", "--data-dir", str(tmp_path)]) == 1
        assert _json(capsys)[" "]["error"]["code"] == "VALIDATION"

    def test_audit(self, tmp_path, capsys):
        with MemorySystem(data_dir=tmp_path) as memory:
            for _ in range(10):
                memory.record_event("org-1", "post_success", platform="instagram")
            memory.run_consolidation(["org-1"])
        assert main(["audit", "org-1", "--data-dir", str(tmp_path)]) == 0
        rows = _json(capsys)
        assert any(r["action_type"] == "episodic_promoted" and r["details"].get("run") for r in rows)
        assert main(["audit", "org-1", "--data-dir", str(tmp_path), "--limit", "1"]) == 0
        assert len(_json(capsys)) == 1

    def test_audit_bad_since(self, tmp_path, capsys):
        code = main(["audit", "org-1", "--data-dir", str(tmp_path), "--since", "yesterday"])
        assert code == 2
        assert "Invalid --since" in capsys.readouterr().err

    def test_budget(self, tmp_path, capsys):
        assert main(["budget", "org-1", "--data-dir", str(tmp_path)]) == 0
        out = _json(capsys)
        assert out["decision"]["allowed"] is True

    def test_config_file(self, tmp_path, capsys):
        cfg = tmp_path / "strata.yaml"
        cfg.write_text(f"strata:\n  data_dir: {tmp_path / 'other'}\n", encoding="utf-8")
        assert main(["stats", "--config", str(cfg)]) == 0
        assert _json(capsys)["db_path"] == str((tmp_path / "other" / "strata.db").resolve())
