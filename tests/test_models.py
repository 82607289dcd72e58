import pydantic
import pytest

from sysupdate.core.models import Category, Finding, Severity, UpdateRun


def make_run(**kwargs):
    return UpdateRun(run_id="update-20240514-091011-abcdef12", dialect="apt", started_at="2024-05-14T09:10:11Z", **kwargs)


def reboot(source="reboot-required-file"):
    return Finding(
        category=Category.REBOOT_REQUIRED,
        severity=Severity.CRITICAL,
        message="System reboot required for kernel/critical updates",
        source=source,
    )


def test_finding_is_immutable():
    f = reboot()
    with pytest.raises(pydantic.ValidationError):
        f.severity = Severity.OPTIONAL


def test_reboot_flag_latches():
    run = make_run()
    assert run.reboot_required is False

    run.add(reboot())
    run.add(Finding(category=Category.SERVICE_RESTART, severity=Severity.RECOMMENDED,
                    message="Service needs restart: cron.service", source="needrestart"))

    assert run.reboot_required is True


def test_exact_duplicate_is_recorded_once():
    run = make_run()

    assert run.add(reboot()) is True
    assert run.add(reboot()) is False
    assert run.extend([reboot(), reboot("needrestart")]) == 1
    assert len(run.findings) == 2


def test_failed_reflects_phase_status():
    run = make_run(phases={"refresh": "ok", "upgrade": "skipped"})
    assert run.failed is False
    run.phases["cleanup"] = "failed"
    assert run.failed is True


def test_json_dump_uses_enum_values():
    run = make_run()
    run.add(reboot())
    data = run.model_dump(mode="json")

    assert data["findings"][0]["category"] == "RebootRequired"
    assert data["findings"][0]["severity"] == "Critical"
    assert data["reboot_required"] is True
