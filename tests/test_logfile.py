from sysupdate.core.classifier import make_finding
from sysupdate.core.models import Category, UpdateRun
from sysupdate.reporting import append_run_log, render_run_log, status_line
from sysupdate.reporting.logfile import FOLLOWUP_SOURCE


def make_run(**kwargs):
    defaults = dict(
        run_id="update-20240514-091011-abcdef12",
        dialect="apt",
        os_id="ubuntu",
        started_at="2024-05-14T09:10:11Z",
        finished_at="2024-05-14T09:14:52Z",
    )
    defaults.update(kwargs)
    return UpdateRun(**defaults)


def test_status_line_variants():
    assert status_line(make_run(phases={"upgrade": "ok"})) == "Status: SUCCESS"
    assert status_line(make_run(dry_run=True)) == "Status: DRY RUN COMPLETE"
    assert status_line(make_run(phases={"upgrade": "failed"})) == "Status: COMPLETED WITH ERRORS"

    run = make_run()
    run.add(make_finding(Category.REBOOT_REQUIRED, "Kernel update detected - system reboot required", "kernel-version"))
    assert status_line(run) == "Status: SUCCESS - REBOOT REQUIRED"


def test_empty_run_sections():
    text = render_run_log(make_run())

    assert "Run: update-20240514-091011-abcdef12" in text
    assert "Dialect: apt (ubuntu)" in text
    assert text.count("(none)") == 3
    assert text.rstrip().endswith("Status: SUCCESS")


def test_conflicts_and_actions_are_separated():
    run = make_run(packages=["openssh-server"], updated=["APT packages: 1 available"], packages_available=1)
    run.add(make_finding(Category.CONFIG_CONFLICT, "Config file needs review: /etc/ssh/sshd_config", "apt-upgrade-output"))
    run.add(make_finding(Category.CONFIG_CONFLICT, "Review configuration conflicts - run: sudo dpkg --configure -a",
                         FOLLOWUP_SOURCE))
    run.add(make_finding(Category.SERVICE_RESTART, "Service needs restart: cron.service", "needrestart"))

    text = render_run_log(run)
    conflicts = text.split("[Configuration Conflicts]")[1].split("[Manual Actions]")[0]
    actions = text.split("[Manual Actions]")[1]

    assert "  * APT packages: 1 available" in text
    assert "    - openssh-server" in text
    assert "[!] Config file needs review: /etc/ssh/sshd_config" in conflicts
    assert "dpkg --configure -a" not in conflicts
    assert "High        Review configuration conflicts - run: sudo dpkg --configure -a (conflict-followup)" in actions
    assert "Recommended Service needs restart: cron.service (needrestart)" in actions
    assert actions.index("High") < actions.index("Recommended")


def test_append_run_log_accumulates(tmp_path):
    path = tmp_path / "logs" / "sysupdate.log"

    append_run_log(make_run(), path)
    append_run_log(make_run(run_id="update-20240515-091011-12345678"), path)

    text = path.read_text(encoding="utf-8")
    assert text.count("Status: SUCCESS") == 2
    assert "update-20240515-091011-12345678" in text
