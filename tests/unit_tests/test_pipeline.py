"""
Unit tests for the composite prepare/run pipeline.
"""

import io
import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock

from clients import SqlrsRestClient
from config import ExecutionContext
from errors import (
    ConflictingInstanceReference,
    PathOutsideWorkspace,
    RemoteError,
    UsageError,
)
from models import DeleteResult, PipelineStep, PlanTask, PrepareJob, PrepareJobAccepted, TaskInput
from paths import translate_host_path
from pipeline import (
    CompositePipelineExecutor,
    final_state_id,
    format_cleanup_result,
    format_plan_task,
    parse_prepare_args,
    split_commands,
)

RESULT = {"dsn": "postgres://sqlrs@localhost:5432/db", "instance_id": "inst-1"}


def deleted():
    return DeleteResult.from_dict({"outcome": "deleted", "root": {"kind": "instance", "id": "inst-1"}})


class TestSplitCommands(unittest.TestCase):
    """Test command line splitting."""

    def test_composite(self):
        steps = split_commands(
            ["prepare:psql", "--image", "pg16", "--", "-f", "a.sql", "run:psql", "--", "-c", "select 1"]
        )
        self.assertEqual(
            steps,
            [
                PipelineStep("prepare:psql", ("--image", "pg16", "--", "-f", "a.sql")),
                PipelineStep("run:psql", ("--", "-c", "select 1")),
            ],
        )
        self.assertEqual(steps[0].verb, "prepare")
        self.assertEqual(steps[1].kind, "psql")

    def test_single(self):
        self.assertEqual(
            split_commands(["run:pgbench", "--instance", "x", "run:psql"]),
            [PipelineStep("run:pgbench", ("--instance", "x", "run:psql"))],
        )

    def test_empty(self):
        with self.assertRaises(UsageError):
            split_commands([])


class TestParsePrepareArgs(unittest.TestCase):
    def test_flags(self):
        parsed = parse_prepare_args(["--image=pg16", "--no-watch", "--", "-f", "x.sql"])
        self.assertEqual(parsed.image, "pg16")
        self.assertFalse(parsed.watch)
        self.assertEqual(parsed.tool_args, ["-f", "x.sql"])

    def test_tool_args_without_separator(self):
        parsed = parse_prepare_args(["--image", "pg16", "-f", "x.sql"])
        self.assertEqual(parsed.tool_args, ["-f", "x.sql"])


class PipelineTestCase(unittest.TestCase):
    """Builds an executor around a mocked engine client."""

    def setUp(self):
        self.root = os.path.realpath(tempfile.mkdtemp(prefix="sqlrs-ws-"))
        self.addCleanup(shutil.rmtree, self.root, ignore_errors=True)
        os.makedirs(os.path.join(self.root, "db"))
        with open(os.path.join(self.root, "init.sql"), "w") as f:
            f.write("create table t (id int);\n")

        self.api = MagicMock()
        self.api.create_prepare_job.return_value = PrepareJobAccepted(
            "job-1", "/v1/prepare-jobs/job-1", "/v1/prepare-jobs/job-1/events"
        )
        self.api.stream_prepare_events.return_value = iter(
            [
                {"type": "status", "status": "running"},
                {"type": "status", "status": "succeeded", "result": RESULT},
            ]
        )
        self.api.run_command.return_value = iter(
            [{"type": "stdout", "data": " ?column? \n"}, {"type": "exit", "exit_code": 0}]
        )
        self.api.delete_instance.return_value = (deleted(), 200)
        self.factory = MagicMock(return_value=self.api)

        self.ctx = ExecutionContext(
            mode="remote",
            endpoint="http://engine:8080",
            workspace_root=self.root,
            image="pg16",
            watch_timeout=10.0,
            poll_interval=1.0,
        )
        self.stdin = io.StringIO("select 42;\n")
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()
        self.now = [0.0]

    def executor(self, **kwargs):
        def sleep(seconds):
            self.now[0] += seconds

        options = dict(
            stdin=self.stdin,
            stdout=self.stdout,
            stderr=self.stderr,
            getcwd=lambda: self.root,
            environ={},
            isatty=False,
            clock=lambda: self.now[0],
            sleep=sleep,
        )
        options.update(kwargs)
        return CompositePipelineExecutor(self.ctx, self.factory, **options)

    def stderr_lines(self, prefix):
        return [l for l in self.stderr.getvalue().splitlines() if l.startswith(prefix)]


class TestCompositePipeline(PipelineTestCase):
    """Test prepare to run handoff and cleanup."""

    COMPOSITE = ["prepare:psql", "--", "-f", "init.sql", "run:psql", "--", "-c", "select 1"]

    def test_conflicting_instance_detected_before_network(self):
        """Test an explicit --instance after a prepare fails without remote calls."""
        argv = ["prepare:psql", "--", "-f", "init.sql", "run:psql", "--instance", "X", "--", "-c", "select 1"]

        with self.assertRaises(ConflictingInstanceReference):
            self.executor().execute(split_commands(argv))

        self.factory.assert_not_called()
        self.assertEqual(self.api.mock_calls, [])

    def test_handoff_run_and_cleanup(self):
        code = self.executor().execute(split_commands(self.COMPOSITE))

        self.assertEqual(code, 0)
        request = self.api.run_command.call_args[0][0]
        self.assertEqual(request.instance_ref, "inst-1")
        self.assertEqual(request.steps[0].args, ["-c", "select 1"])
        self.api.delete_instance.assert_called_once_with("inst-1")
        self.assertEqual(self.stdout.getvalue(), " ?column? \n")
        self.assertEqual(self.stderr_lines("cleanup"), [])

    def test_prepare_request_normalized(self):
        self.executor().execute(split_commands(self.COMPOSITE))

        request = self.api.create_prepare_job.call_args[0][0]
        self.assertEqual(request.prepare_kind, "psql")
        self.assertEqual(request.image_id, "pg16")
        self.assertEqual(request.psql_args, ["-f", os.path.join(self.root, "init.sql")])

    def test_blocked_cleanup_single_warning(self):
        """Test a blocked delete succeeds with exactly one warning line."""
        blocked = DeleteResult.from_dict(
            {"outcome": "blocked", "root": {"kind": "instance", "id": "inst-1", "connections": 1}}
        )
        self.api.delete_instance.return_value = (blocked, 200)

        code = self.executor().execute(split_commands(self.COMPOSITE))

        self.assertEqual(code, 0)
        self.assertEqual(
            self.stderr_lines("cleanup"),
            ["cleanup blocked for instance inst-1: outcome=blocked, connections=1"],
        )

    def test_conflict_status_is_blocked(self):
        result = DeleteResult.from_dict({"outcome": "", "root": {"kind": "instance", "id": "inst-1"}})
        self.api.delete_instance.return_value = (result, 409)

        self.assertEqual(self.executor().execute(split_commands(self.COMPOSITE)), 0)
        self.assertEqual(len(self.stderr_lines("cleanup blocked for instance inst-1")), 1)

    def test_cleanup_failure_is_warning(self):
        self.api.delete_instance.side_effect = RemoteError("connection refused")

        code = self.executor().execute(split_commands(self.COMPOSITE))

        self.assertEqual(code, 0)
        self.assertEqual(self.stderr_lines("cleanup"), ["cleanup failed: connection refused"])

    def http_delete(self, status_code, body):
        """Route delete_instance through a real client with a canned response."""
        response = MagicMock(status_code=status_code)
        if isinstance(body, Exception):
            response.json.side_effect = body
        else:
            response.json.return_value = body
        client = SqlrsRestClient("http://engine:8080")
        client.session = MagicMock()
        client.session.request.return_value = response
        self.api.delete_instance.side_effect = client.delete_instance

    def test_malformed_delete_body_is_warning(self):
        """Test an unexpected delete body neither aborts nor changes the exit code."""
        self.http_delete(200, {"outcome": "deleted", "root": "inst-1"})

        code = self.executor().execute(split_commands(self.COMPOSITE))

        self.assertEqual(code, 0)
        lines = self.stderr_lines("cleanup")
        self.assertEqual(len(lines), 1)
        self.assertTrue(lines[0].startswith("cleanup failed: "))

    def test_conflict_without_body_is_blocked(self):
        self.http_delete(409, ValueError("no json"))

        code = self.executor().execute(split_commands(self.COMPOSITE))

        self.assertEqual(code, 0)
        lines = self.stderr_lines("cleanup")
        self.assertEqual(len(lines), 1)
        self.assertTrue(lines[0].startswith("cleanup blocked for instance inst-1: "))

    def test_cleanup_failure_verbose_names_instance(self):
        self.ctx.verbose = True
        self.api.delete_instance.side_effect = RemoteError("connection refused")

        self.executor().execute(split_commands(self.COMPOSITE))

        self.assertEqual(
            self.stderr_lines("cleanup"),
            ["cleanup failed for instance inst-1: connection refused"],
        )

    def test_cleanup_runs_when_run_fails(self):
        """Test the handed-off instance is deleted even if the run step raises."""
        self.api.run_command.side_effect = RemoteError("run failed", 500)

        with self.assertRaises(RemoteError):
            self.executor().execute(split_commands(self.COMPOSITE))

        self.api.delete_instance.assert_called_once_with("inst-1")

    def test_run_exit_code_propagates(self):
        self.api.run_command.return_value = iter([{"type": "exit", "exit_code": 3}])

        self.assertEqual(self.executor().execute(split_commands(self.COMPOSITE)), 3)
        self.api.delete_instance.assert_called_once()

    def test_cleanup_spinner_stopped_before_warning(self):
        events = []
        blocked = DeleteResult.from_dict({"outcome": "blocked", "root": {"id": "inst-1"}})
        self.api.delete_instance.side_effect = lambda iid: events.append("delete") or (blocked, 200)

        spinner = MagicMock()
        spinner.__enter__.side_effect = lambda: events.append("start")
        spinner.__exit__.side_effect = lambda *a: events.append("stop")
        factory = MagicMock(return_value=spinner)

        self.executor(spinner_factory=factory).execute(split_commands(self.COMPOSITE))

        self.assertEqual(events, ["start", "delete", "stop"])
        factory.assert_called_once_with(
            "Deleting instance inst-1", self.stderr, verbose=False, isatty=False
        )

    def test_detached_prepare_skips_run(self):
        self.api.stream_prepare_events.return_value = iter([])
        self.api.get_prepare_job.return_value = PrepareJob(job_id="job-1", status="running")

        code = self.executor().execute(split_commands(self.COMPOSITE))

        self.assertEqual(code, 0)
        self.assertEqual(
            self.stdout.getvalue(),
            "JOB_ID=job-1\n"
            "STATUS_URL=/v1/prepare-jobs/job-1\n"
            "EVENTS_URL=/v1/prepare-jobs/job-1/events\n"
            "RUN_SKIPPED=prepare_detached\n",
        )
        self.api.run_command.assert_not_called()
        self.api.delete_instance.assert_not_called()

    def test_not_watched_prepare_skips_run(self):
        argv = ["prepare:psql", "--no-watch", "--", "-f", "init.sql", "run:psql", "--", "-c", "select 1"]

        code = self.executor().execute(split_commands(argv))

        self.assertEqual(code, 0)
        self.assertTrue(self.stdout.getvalue().endswith("RUN_SKIPPED=prepare_not_watched\n"))
        self.api.stream_prepare_events.assert_not_called()
        self.api.run_command.assert_not_called()

    def test_stdin_used_by_two_steps_rejected(self):
        argv = ["prepare:psql", "--", "-f", "-", "run:psql", "--", "-f", "-"]

        with self.assertRaises(UsageError):
            self.executor().execute(split_commands(argv))
        self.factory.assert_not_called()

    def test_path_outside_workspace_before_network(self):
        argv = ["prepare:psql", "--", "-f", "../escape.sql", "run:psql", "--", "-c", "select 1"]

        with self.assertRaises(PathOutsideWorkspace):
            self.executor().execute(split_commands(argv))
        self.factory.assert_not_called()

    def test_unsupported_combination(self):
        with self.assertRaises(UsageError):
            self.executor().execute(
                [PipelineStep("run:psql", ("--instance", "a")), PipelineStep("prepare:psql", ())]
            )


class TestSingleSteps(PipelineTestCase):
    """Test prepare-only and run-only invocations."""

    def test_prepare_only_prints_dsn(self):
        code = self.executor().execute(split_commands(["prepare:psql", "--", "-f", "init.sql"]))

        self.assertEqual(code, 0)
        self.assertEqual(self.stdout.getvalue(), f"DSN={RESULT['dsn']}\n")
        self.api.delete_instance.assert_not_called()

    def test_prepare_stdin_captured(self):
        self.executor().execute(split_commands(["prepare:psql", "--", "-f", "-"]))

        request = self.api.create_prepare_job.call_args[0][0]
        self.assertEqual(request.psql_args, ["-f", "-"])
        self.assertEqual(request.stdin, "select 42;\n")

    def test_prepare_requires_image(self):
        self.ctx.image = ""
        with self.assertRaises(UsageError):
            self.executor().execute(split_commands(["prepare:psql", "--", "-c", "select 1"]))

    def test_unknown_prepare_kind(self):
        with self.assertRaises(UsageError):
            self.executor().execute(split_commands(["prepare:mysql", "x"]))

    def test_run_with_instance_has_no_cleanup(self):
        code = self.executor().execute(
            split_commands(["run:pgbench", "--instance", "dev", "--", "-c", "4", "-T", "10"])
        )

        self.assertEqual(code, 0)
        request = self.api.run_command.call_args[0][0]
        self.assertEqual(request.instance_ref, "dev")
        self.assertEqual(request.args, ["-c", "4", "-T", "10"])
        self.api.delete_instance.assert_not_called()

    def test_run_requires_instance(self):
        with self.assertRaises(UsageError):
            self.executor().execute(split_commands(["run:psql", "--", "-c", "select 1"]))

    def test_liquibase_windows_exec_mode(self):
        """Test Windows Liquibase wrappers get relative paths and no conversion."""
        self.ctx.liquibase_exec = '"C:\\lb\\liquibase.bat"'
        argv = ["prepare:lb", "--", "update", "--changelog-file", "db/changelog.xml"]

        self.executor(convert=translate_host_path, environ={"JAVA_HOME": "C:\\jdk"}).execute(
            split_commands(argv)
        )

        request = self.api.create_prepare_job.call_args[0][0]
        self.assertEqual(request.prepare_kind, "lb")
        self.assertEqual(
            request.liquibase_args,
            ["update", "--changelog-file", os.path.join("db", "changelog.xml")],
        )
        self.assertEqual(request.liquibase_exec, "C:\\lb\\liquibase.bat")
        self.assertEqual(request.liquibase_env, {"JAVA_HOME": "C:\\jdk"})
        self.assertEqual(request.work_dir, self.root)

    def test_liquibase_requires_command(self):
        with self.assertRaises(UsageError):
            self.executor().execute(split_commands(["prepare:lb", "--image", "pg16"]))

    def test_watch_detached_prints_refs(self):
        self.api.get_prepare_job.return_value = PrepareJob(job_id="job-1", status="running")
        self.api.stream_prepare_events.side_effect = RemoteError("gone")

        code = self.executor().watch("job-1")

        self.assertEqual(code, 0)
        out = self.stdout.getvalue()
        self.assertIn("STATUS_URL=/v1/prepare-jobs/job-1\n", out)
        self.assertIn("EVENTS_URL=/v1/prepare-jobs/job-1/events\n", out)


PLAN_TASKS = [
    PlanTask(task_id="plan", type="plan", planner_kind="psql"),
    PlanTask(
        task_id="execute-0",
        type="state_execute",
        input=TaskInput("image", "pg16@sha256:abc"),
        task_hash="h1",
        output_state_id="state-1",
        cached=False,
    ),
    PlanTask(
        task_id="prepare-instance",
        type="prepare_instance",
        input=TaskInput("state", "state-1"),
        instance_mode="ephemeral",
    ),
]


class TestPlanCommand(PipelineTestCase):
    """Test plan:psql and plan:lb invocations."""

    def setUp(self):
        super().setUp()
        self.api.stream_prepare_events.return_value = iter(
            [{"type": "status", "status": "succeeded"}]
        )
        self.api.get_prepare_job.return_value = PrepareJob(
            job_id="job-1",
            status="succeeded",
            prepare_kind="psql",
            image_id="pg16",
            plan_only=True,
            tasks=list(PLAN_TASKS),
        )

    def test_plan_text_output(self):
        code = self.executor().execute(split_commands(["plan:psql", "--", "-f", "init.sql"]))

        self.assertEqual(code, 0)
        self.assertEqual(
            self.stdout.getvalue(),
            "Final state: state-1\n"
            "Tasks:\n"
            "  1. plan (planner: psql)\n"
            "  2. state_execute input=image:pg16@sha256:abc hash=h1 output=state-1 cached=no\n"
            "  3. prepare_instance input=state:state-1 mode=ephemeral\n",
        )
        request = self.api.create_prepare_job.call_args[0][0]
        self.assertTrue(request.plan_only)
        self.assertEqual(request.psql_args, ["-f", os.path.join(self.root, "init.sql")])
        self.api.delete_instance.assert_not_called()

    def test_plan_json_output(self):
        self.ctx.output = "json"

        self.executor().execute(split_commands(["plan:psql", "--", "-c", "select 1"]))

        payload = json.loads(self.stdout.getvalue())
        self.assertEqual(payload["prepare_kind"], "psql")
        self.assertEqual([t["type"] for t in payload["tasks"]], ["plan", "state_execute", "prepare_instance"])

    def test_plan_liquibase(self):
        argv = ["plan:lb", "--", "update", "--changelog-file", "db/changelog.xml"]

        self.executor().execute(split_commands(argv))

        request = self.api.create_prepare_job.call_args[0][0]
        self.assertEqual(request.prepare_kind, "lb")
        self.assertTrue(request.plan_only)

    def test_plan_not_combinable(self):
        argv = ["plan:psql", "--", "-c", "select 1", "run:psql", "--", "-c", "select 1"]

        with self.assertRaises(UsageError) as ctx:
            self.executor().execute(split_commands(argv))
        self.assertIn("plan cannot be combined", str(ctx.exception))
        self.factory.assert_not_called()

    def test_unknown_plan_kind(self):
        with self.assertRaises(UsageError) as ctx:
            self.executor().execute(split_commands(["plan:mysql", "x"]))
        self.assertIn("unknown plan kind: mysql", str(ctx.exception))

    def test_plan_detached_prints_refs(self):
        self.api.stream_prepare_events.return_value = iter([])
        self.api.get_prepare_job.return_value = PrepareJob(job_id="job-1", status="running")

        code = self.executor().execute(split_commands(["plan:psql", "--", "-c", "select 1"]))

        self.assertEqual(code, 0)
        self.assertEqual(
            self.stdout.getvalue(),
            "JOB_ID=job-1\n"
            "STATUS_URL=/v1/prepare-jobs/job-1\n"
            "EVENTS_URL=/v1/prepare-jobs/job-1/events\n",
        )


class TestFormatPlanTask(unittest.TestCase):
    def test_task_lines(self):
        self.assertEqual(format_plan_task(PlanTask(task_id="plan", type="plan")), "plan")
        self.assertEqual(
            format_plan_task(PlanTask(task_id="x", type="state_execute", input=TaskInput("", "s0"))),
            "state_execute input=s0 hash= output= cached=n/a",
        )
        self.assertEqual(
            format_plan_task(PlanTask(task_id="p", type="prepare_instance")),
            "prepare_instance input=unknown mode=unknown",
        )
        self.assertEqual(format_plan_task(PlanTask(task_id="z", type="custom")), "custom")

    def test_final_state_prefers_last_task(self):
        self.assertEqual(final_state_id(PLAN_TASKS), "state-1")
        self.assertEqual(final_state_id(PLAN_TASKS[:2]), "state-1")

    def test_no_final_state(self):
        with self.assertRaises(RemoteError):
            final_state_id([PlanTask(task_id="plan", type="plan")])


class TestFormatCleanupResult(unittest.TestCase):
    def test_all_parts(self):
        result = DeleteResult.from_dict(
            {"outcome": "blocked", "root": {"blocked": "active_connections", "connections": 2}}
        )
        self.assertEqual(
            format_cleanup_result(result),
            "outcome=blocked, blocked=active_connections, connections=2",
        )

    def test_empty(self):
        self.assertEqual(format_cleanup_result(DeleteResult.from_dict({})), "blocked")


if __name__ == "__main__":
    unittest.main()
