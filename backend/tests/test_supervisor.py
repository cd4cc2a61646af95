"""
Tests for supervisor config parsing, status parsing and the supervisor probe.
"""
import os
from unittest.mock import patch

import pytest

from health_monitor.config import SupervisorConfig
from health_monitor import supervisor as supervisor_module
from health_monitor.supervisor import (
    ProgramConfig,
    SupervisorProbe,
    belongs_to_project,
    derive_supervisor_status,
    is_rejected_output,
    normalize_state,
    parse_programs_ini,
    parse_programs_manual,
    parse_status_output,
    parse_supervisor_config,
)
from health_monitor.types import ProcessStatus
from tests.mock_helpers import FakeRunner

APP_CONF = """\
[program:default]
process_name=%(program_name)s_%(process_num)02d
command=php /var/www/app/artisan queue:work --queue=default ; main worker
directory=/var/www/app
user=www-data
numprocs=2

[program:mail]
command="php /var/www/app/artisan queue:work --queue=mail"
directory=/var/www/app
autostart=false
"""

OTHER_CONF = """\
[program:unrelated]
command=/opt/other/run
directory=/opt/other
"""

GROUP_RUNNING = (
    "default:default_00               RUNNING   pid 1234, uptime 1:02:03\n"
    "default:default_01               RUNNING   pid 1235, uptime 1:02:01\n"
)

GROUP_PARTIAL = (
    "default:default_00               RUNNING   pid 1234, uptime 1:02:03\n"
    "default:default_01               STOPPED   Not started\n"
)


def _probe(tmp_path, runner, **cfg):
    cfg.setdefault("config_path", str(tmp_path))
    return SupervisorProbe(
        SupervisorConfig(**cfg),
        runner=runner,
        control_paths=(),
        socket_paths=(),
        which=lambda name: None,
    )


def _status(name):
    return ["supervisorctl", "status", name]


class TestConfigParsing:
    """INI parsing with a manual fallback"""

    def test_ini_parse_reads_program_sections(self):
        programs = parse_programs_ini(APP_CONF, "app.conf")
        assert [p.name for p in programs] == ["default", "mail"]

        default = programs[0]
        assert default.command == "php /var/www/app/artisan queue:work --queue=default"
        assert default.user == "www-data"
        assert default.autostart == "true"
        assert default.autorestart == "true"
        assert default.config_file == "app.conf"

        mail = programs[1]
        assert mail.command == "php /var/www/app/artisan queue:work --queue=mail"
        assert mail.autostart == "false"

    def test_non_program_sections_are_ignored(self):
        content = "[supervisord]\nnodaemon=true\n\n[group:workers]\nprograms=default\n"
        assert parse_programs_ini(content, "x.conf") == []

    def test_duplicate_keys_fall_back_to_manual_scanner(self):
        content = (
            "[program:mail]\n"
            "command=first\n"
            "command=\"php artisan queue:work --queue=mail\" ; trailing note\n"
            "# a comment\n"
            "; another comment\n"
            "directory=/srv/app # inline\n"
        )
        programs = parse_supervisor_config(content, "mail.conf")
        assert len(programs) == 1
        assert programs[0].command == "php artisan queue:work --queue=mail"
        assert programs[0].directory == "/srv/app"

    def test_missing_section_header_uses_manual_scanner(self):
        content = "stray text\n[program:worker]\ncommand='run.sh'\n"
        programs = parse_supervisor_config(content, "worker.conf")
        assert programs == [ProgramConfig(name="worker", command="run.sh", config_file="worker.conf")]

    def test_manual_scanner_directly(self):
        programs = parse_programs_manual(APP_CONF, "app.conf")
        assert [p.name for p in programs] == ["default", "mail"]
        assert programs[0].command == "php /var/www/app/artisan queue:work --queue=default"

    def test_all_strategies_failing_raises(self):
        def broken(content, config_file):
            raise ValueError("nope")

        with pytest.raises(ValueError):
            parse_supervisor_config("[program:x]", "x.conf", parsers=(broken,))


class TestBelongsToProject:
    def test_no_root_includes_everything(self):
        assert belongs_to_project(ProgramConfig(name="anything"), None)

    def test_root_in_command(self):
        program = ProgramConfig(name="worker", command="php /var/www/app/artisan queue:work")
        assert belongs_to_project(program, "/var/www/app")

    def test_root_in_directory(self):
        assert belongs_to_project(ProgramConfig(name="worker", directory="/var/www/app"), "/var/www/app/")

    def test_folder_name_in_program_or_file_name(self):
        assert belongs_to_project(ProgramConfig(name="shop-worker"), "/srv/shop")
        assert belongs_to_project(ProgramConfig(name="worker", config_file="shop.conf"), "/srv/shop")

    def test_unrelated_program(self):
        program = ProgramConfig(name="unrelated", command="/opt/other/run", config_file="other.conf")
        assert not belongs_to_project(program, "/var/www/app")


class TestStatusParsing:
    """supervisorctl status output"""

    def test_single_running_line(self):
        status = parse_status_output("mail   RUNNING   pid 99, uptime 0:10:00", "mail")
        assert status.status == "RUNNING"
        assert status.pid == 99
        assert status.uptime == "0:10:00"
        assert status.process_group is False

    def test_non_running_state_is_stopped(self):
        status = parse_status_output("mail   BACKOFF   Exited too quickly (process log may have details)", "mail")
        assert status.status == "STOPPED"
        assert status.state == "BACKOFF"
        assert status.to_dict()["state"] == "BACKOFF"
        assert status.pid is None

    @pytest.mark.parametrize(
        "state,expected",
        [
            ("RUNNING", "RUNNING"),
            ("STARTING", "STOPPED"),
            ("FATAL", "STOPPED"),
            ("EXITED", "STOPPED"),
            ("UNKNOWN", "UNKNOWN"),
            ("WEIRD", "UNKNOWN"),
        ],
    )
    def test_normalize_state(self, state, expected):
        assert normalize_state(state) == expected

    def test_group_all_running(self):
        status = parse_status_output(GROUP_RUNNING, "default")
        assert status.status == "RUNNING"
        assert status.process_group is True
        assert status.running_count == 2
        assert status.total_count == 2
        assert status.pids == [1234, 1235]
        assert status.uptimes == ["1:02:03", "1:02:01"]

    def test_group_partial(self):
        status = parse_status_output(GROUP_PARTIAL, "default")
        assert status.status == "PARTIAL"
        assert status.running_count == 1
        assert status.total_count == 2
        assert status.pids == [1234]

    def test_three_member_group_partial(self):
        output = (
            "q:q_00  RUNNING  pid 10, uptime 0:01:00\n"
            "q:q_01  RUNNING  pid 11, uptime 0:01:00\n"
            "q:q_02  STOPPED  Not started\n"
        )
        status = parse_status_output(output, "q")
        assert status.status == "PARTIAL"
        assert (status.running_count, status.total_count) == (2, 3)
        assert status.pids == [10, 11]

    def test_group_none_running(self):
        output = "w:w_00  STOPPED  Not started\nw:w_01  FATAL  Exited too quickly\n"
        status = parse_status_output(output, "w")
        assert status.status == "STOPPED"
        assert status.running_count == 0

    def test_unparseable_output_is_unknown(self):
        assert parse_status_output("x", "mail").status == "UNKNOWN"

    @pytest.mark.parametrize(
        "output",
        [
            "",
            "mail: ERROR (no such group)",
            "mail: ERROR (no such process)",
            "unix:///var/run/supervisor.sock no such file",
            "error: <class 'socket.error'>, [Errno 13] Permission denied",
            "Failed to connect",
        ],
    )
    def test_rejected_outputs(self, output):
        assert is_rejected_output(output)

    def test_error_words_inside_status_line_are_accepted(self):
        assert not is_rejected_output("mail   FATAL   spawn error")
        assert not is_rejected_output(GROUP_RUNNING)


class TestDeriveStatus:
    def _running(self, *names):
        return [ProcessStatus(name=n, status="RUNNING") for n in names]

    def test_missing_required_queue_is_error(self):
        status, running, missing = derive_supervisor_status(self._running("a", "b"), ["a", "b", "c"], [])
        assert status == "error"
        assert running == ["a", "b"]
        assert missing == ["c"]

    def test_all_required_running_is_ok(self):
        status, _, missing = derive_supervisor_status(self._running("a", "b"), ["a", "b"], [])
        assert status == "ok"
        assert missing is None

    def test_parse_errors_are_warning(self):
        status, _, _ = derive_supervisor_status(self._running("a"), ["a"], ["Error processing x.conf: bad"])
        assert status == "warning"

    def test_unknown_process_is_warning(self):
        processes = self._running("a") + [ProcessStatus(name="ghost", status="UNKNOWN")]
        status, _, _ = derive_supervisor_status(processes, ["a"], [])
        assert status == "warning"

    def test_running_names_are_distinct(self):
        status, running, _ = derive_supervisor_status(self._running("a", "a"), ["a", "b"], [])
        assert status == "error"
        assert running == ["a"]


class TestSupervisorProbe:
    """End-to-end probe over a temp config directory and a fake supervisorctl"""

    def _write_configs(self, tmp_path):
        (tmp_path / "app.conf").write_text(APP_CONF)
        (tmp_path / "other.ini").write_text(OTHER_CONF)
        (tmp_path / "notes.txt").write_text("[program:ignored]\ncommand=x\n")

    def _runner(self):
        runner = FakeRunner()
        runner.add(_status("default:*"), stdout=GROUP_RUNNING)
        runner.add(_status("mail:*"), stdout="mail: ERROR (no such group)")
        runner.add(_status("mail"), stdout="mail                             RUNNING   pid 99, uptime 0:10:00")
        runner.add(_status("unrelated:*"), stdout="unrelated: ERROR (no such group)")
        runner.add(_status("unrelated"), stdout="unrelated   STOPPED   Not started")
        return runner

    def test_missing_directory_is_error(self, tmp_path):
        report = _probe(tmp_path, FakeRunner(), config_path=str(tmp_path / "missing")).check_processes()
        data = report.to_dict()
        assert data["status"] == "error"
        assert data["processes"] == []
        assert "not found" in data["message"]

    def test_empty_directory_is_warning(self, tmp_path):
        data = _probe(tmp_path, FakeRunner()).check_processes().to_dict()
        assert data["status"] == "warning"
        assert data["processes"] == []
        assert data["total_processes"] == 0

    def test_all_required_running(self, tmp_path):
        self._write_configs(tmp_path)
        runner = self._runner()
        report = _probe(
            tmp_path,
            runner,
            project_root="/var/www/app",
            required_queues=("default", "mail"),
        ).check_processes()

        assert report.status == "ok"
        assert [p.name for p in report.processes] == ["default", "mail"]
        assert report.running_queues == ["default", "mail"]
        default = report.processes[0]
        assert default.process_group is True
        assert default.pids == [1234, 1235]
        assert default.directory == "/var/www/app"
        assert default.config_file == "app.conf"
        # group query answered, singular form never needed
        assert _status("default") not in runner.calls
        assert _status("mail") in runner.calls

    def test_missing_required_queue(self, tmp_path):
        self._write_configs(tmp_path)
        report = _probe(
            tmp_path,
            self._runner(),
            project_root="/var/www/app",
            required_queues=("default", "mail", "notifications"),
        ).check_processes()
        data = report.to_dict()

        assert data["status"] == "error"
        assert data["missing_queues"] == ["notifications"]
        assert data["running_queue_count"] == 2
        assert data["required_queue_count"] == 3
        assert "notifications" in data["message"]

    def test_no_project_root_includes_all_programs(self, tmp_path):
        self._write_configs(tmp_path)
        report = _probe(tmp_path, self._runner(), required_queues=("default",)).check_processes()

        names = sorted(p.name for p in report.processes)
        assert names == ["default", "mail", "unrelated"]
        assert report.total_processes == 3
        assert report.running_processes == 2
        assert report.to_dict()["stopped_processes"] == 1

    def test_no_output_gives_unknown_and_warning(self, tmp_path):
        (tmp_path / "ghost.conf").write_text("[program:ghost]\ncommand=/bin/true\n")
        report = _probe(tmp_path, FakeRunner(), required_queues=()).check_processes()

        assert report.status == "warning"
        ghost = report.processes[0]
        assert ghost.status == "UNKNOWN"
        assert ghost.error == "Unable to execute supervisorctl or no output returned"

    def test_rejected_output_gives_error_status(self, tmp_path):
        (tmp_path / "ghost.conf").write_text("[program:ghost]\ncommand=/bin/true\n")
        runner = FakeRunner()
        runner.add(_status("ghost:*"), stdout="ghost: ERROR (no such group)")
        runner.add(_status("ghost"), stdout="ghost: ERROR (no such process)")
        report = _probe(tmp_path, runner, required_queues=()).check_processes()

        assert report.processes[0].status == "ERROR"
        assert report.processes[0].error == "ghost: ERROR (no such process)"

    def test_parse_errors_are_collected(self, tmp_path):
        self._write_configs(tmp_path)
        (tmp_path / "broken.conf").write_text("whatever")
        real_parse = supervisor_module.parse_supervisor_config

        def parse(content, config_file):
            if config_file == "broken.conf":
                raise ValueError("unable to parse broken.conf")
            return real_parse(content, config_file)

        with patch("health_monitor.supervisor.parse_supervisor_config", side_effect=parse):
            report = _probe(
                tmp_path, self._runner(), project_root="/var/www/app", required_queues=("default",)
            ).check_processes()

        assert report.status == "warning"
        assert report.errors == ["Error processing broken.conf: unable to parse broken.conf"]
        assert "Config parsing errors" in report.to_dict()["message"]

    def test_socket_and_executable_resolution(self, tmp_path):
        exe = tmp_path / "supervisorctl"
        exe.write_text("#!/bin/sh\n")
        os.chmod(exe, 0o755)
        sock = tmp_path / "supervisor.sock"
        sock.write_text("")

        probe = SupervisorProbe(
            SupervisorConfig(config_path=str(tmp_path)),
            runner=FakeRunner(),
            control_paths=(str(tmp_path / "missing"), str(exe)),
            socket_paths=(str(tmp_path / "nope.sock"), str(sock)),
            which=lambda name: None,
        )
        assert probe.control_args() == [str(exe), "-s", f"unix://{sock}"]

    def test_configured_socket_must_exist(self, tmp_path):
        probe = SupervisorProbe(
            SupervisorConfig(config_path=str(tmp_path), socket_path=str(tmp_path / "absent.sock")),
            runner=FakeRunner(),
            control_paths=(),
            socket_paths=(),
            which=lambda name: "/usr/bin/supervisorctl",
        )
        assert probe.control_args() == ["/usr/bin/supervisorctl"]

    def test_bare_name_when_nothing_resolves(self, tmp_path):
        probe = _probe(tmp_path, FakeRunner())
        assert probe.find_supervisorctl() == "supervisorctl"
