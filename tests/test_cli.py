"""
DAG Flow — Command Line Tests

Runs the CLI in-process against examples/approval_pipeline.py.
"""

import contextlib
import io
import json
import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from dagflow.cli import (
    EXIT_COMPLETED,
    EXIT_FAILED,
    EXIT_PENDING,
    CLIError,
    _apply_settings,
    load_workflow,
    main,
)
from dagflow.config import EngineSettings, load_settings
from dagflow.workflow import Workflow

TARGET = "examples.approval_pipeline:workflow"
BIG_ORDER = json.dumps({"prepare": {"item": "laptop", "quantity": 3, "unit_price": 950}})
SMALL_ORDER = json.dumps({"prepare": {"item": "mouse", "quantity": 2, "unit_price": 20}})


class _CLITestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.checkpoints = os.path.join(self.tmpdir, "checkpoints")
        self.config = os.path.join(self.tmpdir, "dagflow.yaml")
        with open(self.config, "w") as f:
            f.write("engine:\n  log_level: ERROR\n")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def cli(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(["--config", self.config, *argv])
        return code, out.getvalue(), err.getvalue()

    def run_json(self, *argv):
        code, out, err = self.cli(*argv)
        return code, json.loads(out)


class TestLoadWorkflow(unittest.TestCase):

    def test_loads_attribute(self):
        self.assertIsInstance(load_workflow(TARGET), Workflow)

    def test_loads_factory(self):
        self.assertIsInstance(load_workflow("examples.approval_pipeline:build_workflow"), Workflow)

    def test_bad_targets(self):
        for target in ("no_colon", "not_a_module_xyz:wf", "examples.approval_pipeline:nope",
                       "examples.approval_pipeline:APPROVAL_THRESHOLD"):
            with self.assertRaises(CLIError):
                load_workflow(target)


class TestValidate(_CLITestCase):

    def test_prints_order(self):
        code, out, _ = self.cli("validate", TARGET)
        self.assertEqual(code, EXIT_COMPLETED)
        lines = out.splitlines()
        self.assertIn("prepare", lines[0])
        self.assertIn("→ price, budget", lines[0])
        self.assertIn("approve [human]", out)
        self.assertIn("place_order", lines[-1])


class TestRunAndResume(_CLITestCase):

    def test_small_order_completes(self):
        code, payload = self.run_json("run", TARGET, "--input", SMALL_ORDER,
                                      "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_COMPLETED)
        self.assertEqual(payload["status"], "completed")
        self.assertEqual(payload["state"]["place_order"]["approved_by"], "auto")
        self.assertEqual(payload["step_status"]["approve"], "skipped")

    def test_big_order_pends_then_approves(self):
        code, payload = self.run_json("run", TARGET, "--input", BIG_ORDER,
                                      "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_PENDING)
        run_id = payload["run_id"]
        path = os.path.join(self.checkpoints, f"{run_id}.json")
        self.assertTrue(os.path.exists(path))
        self.assertEqual(payload["pending"]["step_name"], "approve")
        self.assertIn("laptop", payload["pending"]["prompt"])

        code, payload = self.run_json("resume", TARGET, run_id, "--approve",
                                      "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_COMPLETED)
        self.assertEqual(payload["state"]["place_order"],
                         {"order": "PO-LAPTOP-3", "approved_by": "manager"})
        self.assertFalse(os.path.exists(path))

    def test_reject(self):
        _, payload = self.run_json("run", TARGET, "--input", BIG_ORDER,
                                   "--checkpoint-dir", self.checkpoints)
        code, payload = self.run_json("resume", TARGET, payload["run_id"], "--reject",
                                      "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_COMPLETED)
        self.assertEqual(payload["step_status"]["approve"], "skipped")
        self.assertEqual(payload["state"]["place_order"]["approved_by"], "auto")

    def test_pending_lists_checkpoint(self):
        _, payload = self.run_json("run", TARGET, "--input", BIG_ORDER,
                                   "--checkpoint-dir", self.checkpoints)
        code, out, _ = self.cli("pending", "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_COMPLETED)
        self.assertIn(payload["run_id"], out)
        self.assertIn("approval_pipeline", out)

    def test_input_file_and_output(self):
        input_path = os.path.join(self.tmpdir, "order.yaml")
        with open(input_path, "w") as f:
            f.write("prepare:\n  item: pen\n  quantity: 1\n  unit_price: 2\n")
        output_path = os.path.join(self.tmpdir, "result.json")
        code, _, _ = self.cli("run", TARGET, "--input-file", input_path,
                              "--output", output_path, "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_COMPLETED)
        with open(output_path) as f:
            saved = json.load(f)
        self.assertEqual(saved["workflow"], "approval_pipeline")
        self.assertEqual(saved["state"]["price"]["total"], 2.0)

    def test_resume_unknown_run(self):
        code, _, err = self.cli("resume", TARGET, "run_missing", "--approve",
                                "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_FAILED)
        self.assertIn("No checkpoint", err)

    def test_bad_input_json(self):
        code, _, err = self.cli("run", TARGET, "--input", "{not json")
        self.assertEqual(code, EXIT_FAILED)
        self.assertIn("not valid JSON", err)

    def test_no_command(self):
        code, _, _ = self.cli()
        self.assertEqual(code, EXIT_FAILED)


FLOW_MODULE = '''
from dagflow import Workflow, create_step, human_step


class Blob:
    def __init__(self, size):
        self.size = size

    def __repr__(self):
        return f"Blob({self.size})"


def build_flaky():
    calls = []

    def fetch(_input, ctx):
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("upstream busy")
        return len(calls)

    return Workflow("flaky_flow").step(create_step("fetch", fetch))


def build_blob():
    return (
        Workflow("blob_flow")
        .step(create_step("make", lambda i, c: Blob(3)))
        .step(human_step("review"), after="make", type="human")
        .step(create_step("use", lambda i, c: c.get("make")), after="review")
    )
'''


class TestConfigAndState(_CLITestCase):
    """Engine settings from the config file, and state that is not plain JSON."""

    def setUp(self):
        super().setUp()
        self.module_name = f"cli_flows_{os.path.basename(self.tmpdir).replace('-', '_')}"
        with open(os.path.join(self.tmpdir, f"{self.module_name}.py"), "w") as f:
            f.write(FLOW_MODULE)
        sys.path.insert(0, self.tmpdir)

    def tearDown(self):
        sys.path.remove(self.tmpdir)
        sys.modules.pop(self.module_name, None)
        super().tearDown()

    def write_config(self, text):
        with open(self.config, "w") as f:
            f.write(text)

    def test_without_retry_config_step_fails(self):
        code, payload = self.run_json("run", f"{self.module_name}:build_flaky",
                                      "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_FAILED)
        self.assertEqual(payload["error"]["type"], "StepFailedError")
        self.assertEqual(payload["attempts"]["fetch"], 1)

    def test_retry_default_from_config_applied(self):
        self.write_config(
            "engine:\n  log_level: ERROR\n"
            "retry:\n  default:\n    max_retries: 2\n    delay_ms: 1\n")
        code, payload = self.run_json("run", f"{self.module_name}:build_flaky",
                                      "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_COMPLETED)
        self.assertEqual(payload["state"]["fetch"], 3)
        self.assertEqual(payload["attempts"]["fetch"], 3)

    def test_retry_env_override_applied(self):
        env = {k: v for k, v in os.environ.items() if not k.startswith("DAGFLOW_")}
        env["DAGFLOW_RETRY__DEFAULT__MAX_RETRIES"] = "2"
        with patch.dict(os.environ, env, clear=True):
            code, payload = self.run_json("run", f"{self.module_name}:build_flaky",
                                          "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_COMPLETED)
        self.assertEqual(payload["attempts"]["fetch"], 3)

    def test_explicit_workflow_settings_kept(self):
        self.write_config("retry:\n  default:\n    max_retries: 5\n")
        wf = load_workflow("examples.approval_pipeline:build_workflow")
        wf.settings = EngineSettings(log_level="ERROR", human_gate_timeout=60.0)
        _apply_settings(wf, load_settings(self.config))
        self.assertEqual(wf.settings.human_gate_timeout, 60.0)
        self.assertEqual(wf.settings.default_retry.max_retries, 0)

    def test_plain_object_output_pends_and_resumes(self):
        target = f"{self.module_name}:build_blob"
        code, payload = self.run_json("run", target, "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_PENDING)
        self.assertEqual(payload["state"]["make"], "Blob(3)")
        path = os.path.join(self.checkpoints, f"{payload['run_id']}.json")
        with open(path) as f:
            self.assertEqual(json.load(f)["state"], {"make": "Blob(3)"})

        code, payload = self.run_json("resume", target, payload["run_id"], "--approve",
                                      "--checkpoint-dir", self.checkpoints)
        self.assertEqual(code, EXIT_COMPLETED)
        self.assertEqual(payload["state"]["use"], "Blob(3)")
        self.assertFalse(os.path.exists(path))


if __name__ == "__main__":
    unittest.main()
