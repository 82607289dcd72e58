import json

import pytest

from sysupdate.core import update as update_mod
from sysupdate.core.classifier import OutcomeClassifier
from sysupdate.core.dialects import REBOOT_MARKER, AptDialect
from sysupdate.core.models import Category, Severity, UpdateOptions
from sysupdate.core.update import pending_firmware_updates, perform_update
from sysupdate.core.utils import LockTimeoutError, PreconditionError

OS_RELEASE = "/etc/os-release"
UBUNTU = "ID=ubuntu\nVERSION_ID=\"24.04\"\nID_LIKE=debian\n"
ROCKY = "ID=\"rocky\"\nVERSION_ID=\"9.4\"\nID_LIKE=\"rhel centos fedora\"\n"


def apt_probe(fake_probe, commands=None, tools=(), files=None, **kwargs):
    return fake_probe(
        commands=commands,
        tools={"apt-get", "sudo", *tools},
        files={OS_RELEASE: UBUNTU, **(files or {})},
        **kwargs,
    )


def update(probe, **options):
    options.setdefault("lock_attempts", 3)
    options.setdefault("lock_backoff", 0)
    return perform_update(
        UpdateOptions(**options),
        probe=probe,
        os_release_path=OS_RELEASE,
        sleep=lambda seconds: None,
        use_sudo=False,
    )


def messages(run, category=None):
    return [f.message for f in run.findings if category is None or f.category == category]


def test_empty_upgrade(fake_probe, load_fixture):
    probe = apt_probe(fake_probe, commands={"apt-get -s upgrade": (0, load_fixture("apt_simulate_empty.txt"))})

    run = update(probe)

    assert run.dialect == "apt"
    assert run.os_id == "ubuntu"
    assert run.packages_available == 0
    assert run.packages == []
    assert run.updated == []
    assert not run.has_category(Category.BROKEN_PACKAGE)
    assert not run.has_category(Category.CONFIG_CONFLICT)
    assert run.reboot_required is False
    assert run.failed is False
    assert run.finished_at is not None
    assert run.phases["refresh"] == "ok"
    assert run.phases["upgrade"] == "ok"
    assert run.phases["dist-upgrade"] == "skipped"


def test_upgrade_with_config_conflict(fake_probe, load_fixture):
    probe = apt_probe(fake_probe, commands={
        "apt-get -s upgrade": (0, load_fixture("apt_simulate_upgrade.txt")),
        "apt-get upgrade": (0, load_fixture("apt_upgrade_conflict.txt")),
    })

    run = update(probe)

    assert run.packages == ["openssh-client", "openssh-server", "tzdata"]
    assert run.packages_available == 3
    assert run.packages_applied == 3
    assert run.updated == ["APT packages: 3 available"]
    assert messages(run, Category.CONFIG_CONFLICT) == [
        "Config file needs review: /etc/ssh/sshd_config",
        "Review configuration conflicts - run: sudo dpkg --configure -a",
        "Check for .dpkg-* files in /etc: find /etc -name '*.dpkg-*' -type f",
    ]
    assert messages(run, Category.SERVICE_RESTART) == [
        "Deferred service restart: dbus.service",
        "Deferred service restart: ssh.service",
    ]
    conflict = run.findings[0]
    assert conflict.severity == Severity.CRITICAL
    assert conflict.source == "apt-upgrade-output"


def test_reboot_marker_yields_one_finding(fake_probe):
    probe = apt_probe(fake_probe, files={REBOOT_MARKER: "*** System restart required ***\n"})

    run = update(probe)
    run.extend(OutcomeClassifier(AptDialect(), probe).reboot_status())

    assert run.reboot_required is True
    assert messages(run, Category.REBOOT_REQUIRED) == ["System reboot required for kernel/critical updates"]


def test_lock_held_throughout_aborts_without_run(fake_probe):
    probe = apt_probe(fake_probe, locked={"/var/lib/dpkg/lock-frontend"})

    with pytest.raises(LockTimeoutError):
        update(probe)

    assert not probe.ran("apt-get update")
    assert not probe.ran("apt-get upgrade")


def test_failed_upgrade_still_cleans_up(fake_probe):
    probe = apt_probe(fake_probe, commands={
        "apt-get upgrade": (100, "E: Sub-process /usr/bin/dpkg returned an error code (1)\n"),
    })

    run = update(probe)

    assert run.phases["upgrade"] == "failed"
    assert run.phases["cleanup"] == "ok"
    assert run.failed is True
    assert probe.ran("apt-get autoremove -y")
    failures = [f for f in run.findings if f.message.startswith("Package operation failed (100): apt-get upgrade")]
    assert len(failures) == 1
    assert failures[0].category == Category.BROKEN_PACKAGE
    assert failures[0].severity == Severity.CRITICAL


def test_dry_run_only_queries(fake_probe, load_fixture):
    probe = apt_probe(fake_probe, commands={"apt-get -s upgrade": (0, load_fixture("apt_simulate_upgrade.txt"))})

    run = update(probe, dry_run=True)

    assert run.dry_run is True
    assert run.packages_available == 3
    assert run.phases["refresh"] == "skipped"
    assert run.phases["upgrade"] == "skipped"
    assert run.phases["cleanup"] == "skipped"
    assert run.phases["post-checks"] == "ok"
    assert not probe.ran("apt-get update")
    assert not probe.ran("apt-get upgrade")
    assert not probe.ran("apt-get autoremove")


def test_unsupported_os_fails_before_any_command(fake_probe):
    probe = fake_probe(tools={"pacman", "sudo"}, files={OS_RELEASE: "ID=arch\n"})

    with pytest.raises(PreconditionError):
        update(probe)

    assert probe.calls == []


def test_missing_package_manager(fake_probe):
    probe = fake_probe(tools={"sudo"}, files={OS_RELEASE: UBUNTU})

    with pytest.raises(PreconditionError) as excinfo:
        update(probe)

    assert "apt-get" in str(excinfo.value)
    assert probe.calls == []


def test_missing_sudo_when_not_root(fake_probe, monkeypatch):
    monkeypatch.setattr(update_mod, "is_root", lambda: False)
    probe = fake_probe(tools={"apt-get"}, files={OS_RELEASE: UBUNTU})

    with pytest.raises(PreconditionError) as excinfo:
        update(probe)

    assert str(excinfo.value) == "Missing required dependencies: sudo"


def test_dist_upgrade_suggestion(fake_probe):
    probe = apt_probe(fake_probe, commands={
        "apt-get -s upgrade": (0, "Inst vim [2:9.1.0016-1ubuntu7] (2:9.1.0016-1ubuntu7.1 Ubuntu:24.04 [amd64])\n"),
        "apt-get -s dist-upgrade": (0, "Inst vim [2:9.1.0016-1ubuntu7] (2:9.1.0016-1ubuntu7.1 Ubuntu:24.04 [amd64])\n"
                                       "Inst linux-generic [6.8.0-31.31] (6.8.0-35.35 Ubuntu:24.04 [amd64])\n"),
    })

    run = update(probe)

    assert "Consider running with --enable-dist-upgrade for 1 additional package updates" in messages(run)


def test_dist_upgrade_enabled(fake_probe):
    probe = apt_probe(fake_probe, commands={
        "apt-get dist-upgrade": (0, "Unpacking linux-generic (6.8.0-35.35) over (6.8.0-31.31) ...\n"),
    })

    run = update(probe, enable_dist_upgrade=True)

    assert run.phases["dist-upgrade"] == "ok"
    assert run.packages_applied == 1
    assert not probe.ran("apt-get -s dist-upgrade")


def test_snap_present_but_disabled_is_suggested(fake_probe):
    snaps = "Name    Version   Rev    Tracking       Publisher   Notes\ncore22  20240408  1380   latest/stable  canonical** base\nlxd     5.21.1    28460  5.21/stable    canonical** -\n"
    probe = apt_probe(fake_probe, tools={"snap"}, commands={"snap list": (0, snaps)})

    run = update(probe)

    assert "Consider running with --enable-snap to update 2 Snap packages" in messages(run)
    assert run.phases["snap"] == "skipped"
    assert not probe.ran("snap refresh")


def test_snap_enabled(fake_probe):
    snaps = "Name    Version   Rev    Tracking       Publisher   Notes\ncore22  20240408  1380   latest/stable  canonical** base\n"
    probe = apt_probe(fake_probe, tools={"snap"}, commands={"snap list": (0, snaps)})

    run = update(probe, enable_snap=True)

    assert "Snap packages: 1 checked" in run.updated
    assert run.phases["snap"] == "ok"
    assert probe.ran("snap refresh")


def test_flatpak_enabled_but_missing(fake_probe):
    run = update(apt_probe(fake_probe), enable_flatpak=True)

    hints = [f for f in run.findings if f.source == "flatpak-missing"]
    assert [f.message for f in hints] == ["Install flatpak to use Flatpak apps: sudo apt install flatpak"]
    assert hints[0].category == Category.OPTIONAL_SUGGESTION
    assert run.phases["flatpak"] == "skipped"
    assert run.failed is False


def test_dnf_run(fake_probe, load_fixture):
    probe = fake_probe(
        tools={"dnf", "sudo"},
        files={OS_RELEASE: ROCKY},
        commands={
            "dnf -q list --upgrades": (0, load_fixture("dnf_list_upgrades.txt")),
            "dnf upgrade": (0, load_fixture("dnf_upgrade_rpmnew.txt")),
        },
    )

    run = update(probe)

    assert run.dialect == "dnf"
    assert run.packages == ["openssh-server", "sudo"]
    assert run.updated == ["DNF packages: 2 updates available"]
    assert run.packages_applied == 2
    assert "dist-upgrade" not in run.phases
    assert probe.ran("dnf makecache")
    assert probe.ran("dnf clean all")
    conflicts = messages(run, Category.CONFIG_CONFLICT)
    assert conflicts[:2] == [
        "Config file backup: /etc/sudoers saved as /etc/sudoers.rpmsave",
        "New config file: /etc/ssh/sshd_config created as /etc/ssh/sshd_config.rpmnew",
    ]
    assert "Compare config files manually and merge changes as needed" in conflicts


def test_firmware_update(fake_probe):
    devices = {"Devices": [
        {"Name": "System Firmware", "Releases": [{"Version": "1.2.3"}]},
        {"Name": "UEFI dbx", "Releases": []},
    ]}
    probe = apt_probe(fake_probe, tools={"fwupdmgr"}, commands={
        "fwupdmgr refresh": (2, "Metadata is up to date\n"),
        "fwupdmgr get-updates": (0, json.dumps(devices)),
        "fwupdmgr update": (0, "Successfully installed firmware\nAn update requires a reboot to complete.\n"),
    })

    run = update(probe, enable_firmware=True)

    assert run.phases["firmware"] == "ok"
    assert "Firmware: 1 updates applied" in run.updated
    assert run.reboot_required is True
    assert "Firmware update requires a reboot to complete" in messages(run, Category.REBOOT_REQUIRED)


def test_firmware_tool_missing(fake_probe):
    run = update(apt_probe(fake_probe), enable_firmware=True)

    assert "Install fwupd for firmware updates: sudo apt install fwupd" in messages(run)
    assert run.phases["firmware"] == "skipped"


@pytest.mark.parametrize("text, expected", [
    ("", 0),
    ("not json", 0),
    ("[]", 0),
    ('{"Devices": []}', 0),
    ('{"Devices": [{"Releases": [{}]}, {"Releases": [{}, {}]}, {}]}', 2),
])
def test_pending_firmware_updates(text, expected):
    assert pending_firmware_updates(text) == expected
