"""Shared fixtures for the orchestrator test suite.

External imaging tools are stood in for by real subprocesses of the running
interpreter (``sys.executable -c ...``) that write their declared outputs, so
the executor, runner and scheduler are exercised end to end.
"""

import os
import sys
import logging

import pytest
import yaml

from orchestrator_utils import load_orchestrator_config
from dwi_stages import In, Out, make_stage, build_pipeline


# ---------------------------------------------------------------------------
# Stand-in tool programs
# ---------------------------------------------------------------------------

# argv: <inputs...> -- <outputs...>; writes a line into every output
WRITE_OUTPUTS = (
    "import sys\n"
    "args = sys.argv[1:]\n"
    "for path in args[args.index('--') + 1:]:\n"
    "    with open(path, 'w') as f:\n"
    "        f.write('ok\\n')\n"
)

# creates every output but leaves it empty
WRITE_EMPTY = (
    "import sys\n"
    "args = sys.argv[1:]\n"
    "for path in args[args.index('--') + 1:]:\n"
    "    open(path, 'w').close()\n"
)

FAIL = (
    "import sys\n"
    "print('processing...')\n"
    "print('boom: bad input')\n"
    "sys.exit(1)\n"
)


def touch(path, content="data\n"):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(content)
    return path


def python_stage(name, inputs, outputs, workdir, code=WRITE_OUTPUTS, gpu=False, threads=None):
    """A stage whose command is the current interpreter running `code`."""
    argv = (
        [sys.executable, "-c", code]
        + [In(role) for role in sorted(inputs)]
        + ["--"]
        + [Out(role) for role in sorted(outputs)]
    )
    return make_stage(name, argv, inputs, outputs, workdir, threads=threads, gpu=gpu)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def test_logger():
    """A propagating logger, so caplog sees its records."""
    logger = logging.getLogger("orchestrator_tests")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def references(tmp_path):
    ref_dir = os.path.join(str(tmp_path), "refs")
    return {
        "template": touch(os.path.join(ref_dir, "MNI152_T1_1mm_brain.nii.gz"), "template\n"),
        "atlas": touch(os.path.join(ref_dir, "atlas_MNI_1mm.nii.gz"), "atlas\n"),
        "seed_mask": touch(os.path.join(ref_dir, "seed_MNI_1mm.nii.gz"), "seed\n"),
    }


@pytest.fixture
def study_dirs(tmp_path):
    return {
        "input_dir": os.path.join(str(tmp_path), "raw"),
        "output_dir": os.path.join(str(tmp_path), "out"),
    }


@pytest.fixture
def study_config(study_dirs, references, test_logger):
    """A validated config in 'full' mode built without a config file."""
    return load_orchestrator_config(
        None, test_logger,
        overrides={"study": dict(study_dirs), "references": dict(references)},
    )


@pytest.fixture
def config_file(tmp_path, study_dirs, references):
    """Write a study YAML and return its path; keyword args update sections."""
    def _write(**sections):
        content = {
            "study": dict(study_dirs),
            "references": dict(references),
            "resources": {"max_concurrent": 2, "threads_per_job": 1},
        }
        for key, value in sections.items():
            content.setdefault(key, {}).update(value)
        path = os.path.join(str(tmp_path), "study.yaml")
        with open(path, "w") as f:
            yaml.safe_dump(content, f)
        return path
    return _write


@pytest.fixture
def make_chain(tmp_path):
    """
    Factory for a linear fake subject pipeline:
    input.txt -> step1.txt -> ... -> result.csv (terminal artifact).
    """
    base = str(tmp_path)

    def _chain(sub_id, n_stages=3, fail_at=None, empty_at=None, create_input=True):
        root = os.path.join(base, "out", sub_id)
        raw = os.path.join(base, "raw", sub_id, "input.txt")
        if create_input:
            touch(raw)

        stages = []
        prev = raw
        for i in range(1, n_stages + 1):
            out = os.path.join(root, "result.csv" if i == n_stages else f"step{i}.txt")
            code = WRITE_OUTPUTS
            if i == fail_at:
                code = FAIL
            elif i == empty_at:
                code = WRITE_EMPTY
            stages.append(python_stage(f"step{i}", {"src": prev}, {"dst": out}, root, code=code))
            prev = out

        paths = {"root": root, "log_file": os.path.join(base, "out", "logs", f"{sub_id}.log")}
        return build_pipeline(sub_id, stages, {"input": raw}, {}, [prev], paths)

    return _chain
