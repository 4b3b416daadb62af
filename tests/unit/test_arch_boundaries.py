from __future__ import annotations

from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
CORE = ROOT / "src/tierflow/core"


def test_only_the_executor_assigns_session_errors():
    offenders: list[str] = []
    for py_file in CORE.rglob("*.py"):
        if py_file.name == "executor.py":
            continue
        if "session.error =" in py_file.read_text(encoding="utf-8"):
            offenders.append(str(py_file))
    assert offenders == [], f"session.error assigned outside the executor: {offenders}"


def test_core_does_not_import_apps():
    offenders: list[str] = []
    for py_file in CORE.rglob("*.py"):
        if "tierflow.apps" in py_file.read_text(encoding="utf-8"):
            offenders.append(str(py_file))
    assert offenders == [], f"core imports the app layer: {offenders}"


def test_only_billing_package_uses_http_clients():
    offenders: list[str] = []
    for py_file in CORE.rglob("*.py"):
        if py_file.parent.name == "billing":
            continue
        content = py_file.read_text(encoding="utf-8")
        if "import httpx" in content or "requests." in content:
            offenders.append(str(py_file))
    assert offenders == [], f"HTTP client used outside billing gateways: {offenders}"


def test_monitor_never_writes_user_data():
    content = (CORE / "monitor/preservation.py").read_text(encoding="utf-8")
    for call in ["write_item", "set_tier", "set_quotas", "archive_feature_data", "set_feature_enabled"]:
        assert call not in content
