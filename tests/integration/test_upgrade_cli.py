from __future__ import annotations

import yaml

from tierflow.apps import upgrade_cli
from tierflow.apps.runtime_support import build_runtime


def _write_config(tmp_path) -> str:
    cfg_path = tmp_path / "instance.yaml"
    cfg_path.write_text(
        yaml.safe_dump(
            {
                "database": {"url": f"sqlite:///{tmp_path / 'cli.db'}"},
                "telemetry": {"log_level": "ERROR"},
                "upgrade": {"transform_backoff_seconds": 0.0},
            }
        ),
        encoding="utf-8",
    )
    return str(cfg_path)


def test_tiers_and_diff_output(tmp_path, capsys):
    cfg = _write_config(tmp_path)

    assert upgrade_cli.main(["--config", cfg, "tiers"]) == 0
    out = capsys.readouterr().out
    assert "- starter: name=Starter monthly=49 yearly=490" in out
    assert "- ultimate:" in out

    assert upgrade_cli.main(["--config", cfg, "diff", "--current", "professional", "--target", "starter"]) == 0
    out = capsys.readouterr().out
    assert "diff professional -> starter downgrade=True" in out
    assert "disable_feature:roi_analytics" in out


def test_upgrade_then_status(tmp_path, capsys):
    cfg = _write_config(tmp_path)
    runtime = build_runtime(config_path=cfg)
    with runtime.db_session_factory() as db:
        from tierflow.db.models import Account

        db.add(Account(user_id="cli-user", tier="free"))
        db.commit()

    assert upgrade_cli.main(["--config", cfg, "upgrade", "--user", "cli-user", "--target", "starter"]) == 0
    out = capsys.readouterr().out
    assert "[  0%] starting" in out
    assert "[100%] completed" in out
    assert "success=True" in out

    assert upgrade_cli.main(["--config", cfg, "status", "--user", "cli-user"]) == 0
    out = capsys.readouterr().out
    assert "free->starter state=completed progress=100" in out
    assert "preservation integrity=100 " in out


def test_invalid_tier_reports_error(tmp_path, capsys):
    cfg = _write_config(tmp_path)
    assert upgrade_cli.main(["--config", cfg, "diff", "--current", "free", "--target", "gold"]) == 1
    assert "error kind=validation" in capsys.readouterr().out


def test_purge_snapshots(tmp_path, capsys):
    cfg = _write_config(tmp_path)
    assert upgrade_cli.main(["--config", cfg, "purge-snapshots"]) == 0
    assert "purged-snapshots=0" in capsys.readouterr().out
