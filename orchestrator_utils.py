#!/usr/bin/env python3

# ============================================================================
# ORCHESTRATOR UTILITIES FOR DWI CONNECTOME PROCESSING
# Shared helpers for the cohort scheduler (run_orchestrator.py), the subject
# pipeline runner (orchestrate_subject.py) and the stage definitions
# (dwi_stages.py): config loading, toolchain environment, reference files,
# roster parsing, completion checks, job log, run report and connectome QC.
#
# Version: 1.0
# Last updated: 10/18/26
# ============================================================================

import os
import re
import csv
import copy
import json
import stat
import shutil
import logging
import tempfile
import threading
from datetime import datetime
from collections import namedtuple
from types import MappingProxyType

import yaml
import numpy as np
import pandas as pd


class OrchestratorError(Exception):
    """Raised for unrecoverable run-level errors (failed preconditions)."""
    pass


# ============================================================================
# Section A: Logging
# ============================================================================

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
ROOT_LOGGER_NAME = "dwi_connectome"


def setup_logging(name, log_file=None, console=True, level=logging.INFO):
    """
    Configure and return a named logger.

    Safe to call repeatedly: a console handler is only added once and a file
    handler is only added once per log file path.

    Parameters
    ----------
    name : str
        Logger name (e.g. "dwi_connectome" or "dwi_connectome.mgh_1001").
    log_file : str or None
        If set, messages are also appended to this file.
    console : bool
        If True, messages are also written to stderr.
    level : int

    Returns
    -------
    logging.Logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    # FileHandler subclasses StreamHandler, so compare exact types
    if console and not any(type(h) is logging.StreamHandler for h in logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    if log_file:
        log_file = os.path.abspath(log_file)
        already_attached = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == log_file
            for h in logger.handlers
        )
        if not already_attached:
            os.makedirs(os.path.dirname(log_file), exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def get_subject_logger(sub_id, log_file):
    """Return the file-only logger for one subject's processing log."""
    return setup_logging(f"{ROOT_LOGGER_NAME}.{sub_id}", log_file=log_file, console=False)


def close_logging(logger):
    """Detach and close every handler on a logger (releases file handles)."""
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


# ============================================================================
# Section B: Config Loading and Validation
# ============================================================================

VALID_MODES = ("full", "preproc", "connectome")

DEFAULT_INPUT_PATTERNS = {
    "dwi": "{subject}/diff/raw/mri/diff.nii.gz",
    "bvecs": "{subject}/diff/raw/bvecs_fsl.txt",
    "bvals": "{subject}/diff/raw/bvals.txt",
    "t1": "{subject}/anat/T1/T1.nii.gz",
}

DEFAULT_CONFIG = {
    "study": {
        "input_dir": None,
        "output_dir": None,
        "preproc_dir": None,
        "inputs": dict(DEFAULT_INPUT_PATTERNS),
    },
    "references": {
        "template": None,
        "atlas": None,
        "seed_mask": None,
        "atlas_labels": None,
    },
    "resources": {
        "max_concurrent": 1,
        "threads_per_job": 1,
        "gpu_devices": [],
        "stage_timeout": None,
    },
    "pipeline": {
        "mode": "full",
    },
    "preproc": {
        "pe_dir": "AP",
        "rpe": "none",
        "eddy_options": " --slm=linear --data_is_shelled",
        "degibbs_axes": "0,1",
    },
    "registration": {
        "bet_b0_frac": 0.2,
        "bet_t1_frac": 0.3,
    },
    "tractography": {
        "streamlines": 1000000,
        "cutoff": 0.06,
        "backtrack": True,
    },
    "connectome": {
        "seed_region_id": None,
        "symmetric": True,
        "zero_diagonal": True,
        "scale_invnodevol": True,
    },
    "toolchain": {
        "fsl_dir": None,
        "freesurfer_home": None,
        "ants_path": None,
        "mrtrix_bin": None,
        "path_prepend": [],
        "env": {},
        "inherit_environment": True,
    },
    "qc": {
        "enabled": False,
        "heatmap": False,
    },
    "roster": {
        "subjects": [],
        "subject_list": None,
        "range": None,
        "pattern": "{}",
        "table": None,
        "column": "participant_id",
    },
}


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _deep_merge(base, update, skip_none=False):
    """
    Recursively merge `update` into `base` in place.

    None values never replace a nested section; with skip_none=True they are
    ignored everywhere (used for CLI overrides that were not given).
    """
    for key, value in update.items():
        if value is None and (skip_none or isinstance(base.get(key), dict)):
            continue
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value, skip_none=skip_none)
        else:
            base[key] = value
    return base


def _abs_path(path):
    return os.path.abspath(os.path.expanduser(str(path)))


def load_orchestrator_config(config_path, logger, overrides=None):
    """
    Load, merge and validate the study config.

    Parameters
    ----------
    config_path : str or None
        Path to the YAML study config. May be None when every required value
        is supplied through `overrides`.
    logger : logging.Logger
    overrides : dict or None
        Nested dict of values taken from the command line. Keys whose value is
        None are ignored.

    Returns
    -------
    dict
        Validated config with defaults filled in and paths made absolute.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is not None:
        if not os.path.isfile(config_path):
            raise OrchestratorError(f"Study config not found: {config_path}")

        with open(config_path, "r") as f:
            try:
                loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise OrchestratorError(f"YAML parse error in {config_path}: {e}")

        if loaded is None:
            raise OrchestratorError(f"Config file is empty: {config_path}")
        if not isinstance(loaded, dict):
            raise OrchestratorError(
                f"Config file must contain a mapping at the top level: {config_path}"
            )

        unknown = sorted(set(loaded) - set(DEFAULT_CONFIG))
        if unknown:
            logger.warning("Ignoring unknown config section(s): %s", unknown)
            for key in unknown:
                loaded.pop(key)

        _deep_merge(config, loaded)

    if overrides:
        _deep_merge(config, overrides, skip_none=True)

    return validate_config(config, logger)


def validate_config(config, logger):
    """
    Validate a merged config dict in place and return it.

    Raises
    ------
    OrchestratorError
        On the first invalid value, naming the offending key.
    """
    for section in DEFAULT_CONFIG:
        if not isinstance(config.get(section), dict):
            raise OrchestratorError(f"Config section '{section}' must be a mapping.")

    # --- study ---
    study = config["study"]
    for key in ("input_dir", "output_dir"):
        if not study.get(key):
            raise OrchestratorError(f"Config study section missing required key '{key}'.")
        study[key] = _abs_path(study[key])
    study["preproc_dir"] = _abs_path(study["preproc_dir"]) if study.get("preproc_dir") else study["output_dir"]

    for role, pattern in study["inputs"].items():
        if not isinstance(pattern, str) or "{subject}" not in pattern:
            raise OrchestratorError(
                f"study.inputs.{role} must be a path pattern containing '{{subject}}', got: {pattern!r}"
            )
    missing_roles = sorted(set(DEFAULT_INPUT_PATTERNS) - set(study["inputs"]))
    if missing_roles:
        raise OrchestratorError(f"study.inputs is missing pattern(s) for: {missing_roles}")

    # --- pipeline ---
    mode = config["pipeline"].get("mode")
    if mode not in VALID_MODES:
        raise OrchestratorError(f"pipeline.mode must be one of {VALID_MODES}, got: {mode!r}")

    # --- references ---
    refs = config["references"]
    required_refs = [] if mode == "preproc" else ["template", "atlas", "seed_mask"]
    for key in required_refs:
        if not refs.get(key):
            raise OrchestratorError(
                f"references.{key} is required for pipeline mode '{mode}'."
            )
    for key, value in refs.items():
        refs[key] = _abs_path(value) if value else None

    # --- resources ---
    res = config["resources"]
    for key in ("max_concurrent", "threads_per_job"):
        if not _is_int(res.get(key)) or res[key] < 1:
            raise OrchestratorError(f"resources.{key} must be a positive integer, got: {res.get(key)!r}")
    gpus = res.get("gpu_devices") or []
    if not isinstance(gpus, list):
        raise OrchestratorError("resources.gpu_devices must be a list of device ids.")
    res["gpu_devices"] = [str(g) for g in gpus]
    timeout = res.get("stage_timeout")
    if timeout is not None and (not _is_number(timeout) or timeout <= 0):
        raise OrchestratorError(f"resources.stage_timeout must be a positive number or null, got: {timeout!r}")

    n_cores = os.cpu_count() or 1
    budget = res["max_concurrent"] * res["threads_per_job"]
    if budget > n_cores:
        logger.warning(
            "max_concurrent * threads_per_job = %d exceeds the %d available core(s); "
            "external tools will be oversubscribed.",
            budget, n_cores
        )

    # --- preproc ---
    pre = config["preproc"]
    if pre.get("rpe") not in ("none", "header"):
        raise OrchestratorError(f"preproc.rpe must be 'none' or 'header', got: {pre.get('rpe')!r}")
    for key in ("pe_dir", "eddy_options", "degibbs_axes"):
        if not isinstance(pre.get(key), str) or not pre[key].strip():
            raise OrchestratorError(f"preproc.{key} must be a non-empty string.")

    # --- registration ---
    for key in ("bet_b0_frac", "bet_t1_frac"):
        frac = config["registration"].get(key)
        if not _is_number(frac) or not 0 < frac < 1:
            raise OrchestratorError(f"registration.{key} must be between 0 and 1, got: {frac!r}")

    # --- tractography ---
    tract = config["tractography"]
    if not _is_int(tract.get("streamlines")) or tract["streamlines"] < 1:
        raise OrchestratorError(
            f"tractography.streamlines must be a positive integer, got: {tract.get('streamlines')!r}"
        )
    if not _is_number(tract.get("cutoff")) or tract["cutoff"] <= 0:
        raise OrchestratorError(f"tractography.cutoff must be a positive number, got: {tract.get('cutoff')!r}")
    if not isinstance(tract.get("backtrack"), bool):
        raise OrchestratorError("tractography.backtrack must be true or false.")

    # --- connectome ---
    conn = config["connectome"]
    seed_id = conn.get("seed_region_id")
    if seed_id is not None and (not _is_int(seed_id) or seed_id < 1):
        raise OrchestratorError(
            f"connectome.seed_region_id must be a positive integer or null, got: {seed_id!r}"
        )
    for key in ("symmetric", "zero_diagonal", "scale_invnodevol"):
        if not isinstance(conn.get(key), bool):
            raise OrchestratorError(f"connectome.{key} must be true or false.")

    # --- toolchain ---
    tc = config["toolchain"]
    prepend = tc.get("path_prepend") or []
    if not isinstance(prepend, list) or not all(isinstance(p, str) for p in prepend):
        raise OrchestratorError("toolchain.path_prepend must be a list of directories.")
    tc["path_prepend"] = [_abs_path(p) for p in prepend]
    env = tc.get("env") or {}
    if not isinstance(env, dict):
        raise OrchestratorError("toolchain.env must be a mapping of variable names to values.")
    tc["env"] = {str(k): str(v) for k, v in env.items()}
    for key in ("fsl_dir", "freesurfer_home", "ants_path", "mrtrix_bin"):
        tc[key] = _abs_path(tc[key]) if tc.get(key) else None
    if not isinstance(tc.get("inherit_environment"), bool):
        raise OrchestratorError("toolchain.inherit_environment must be true or false.")

    # --- qc ---
    for key in ("enabled", "heatmap"):
        if not isinstance(config["qc"].get(key), bool):
            raise OrchestratorError(f"qc.{key} must be true or false.")

    logger.info("Study config validated successfully (mode: %s).", mode)
    return config


def config_snapshot(config):
    """Return the subset of the config recorded in the run report."""
    res = config["resources"]
    return copy.deepcopy({
        "mode": config["pipeline"]["mode"],
        "max_concurrent": res["max_concurrent"],
        "threads_per_job": res["threads_per_job"],
        "gpu_devices": res["gpu_devices"],
        "stage_timeout": res["stage_timeout"],
        "streamlines": config["tractography"]["streamlines"],
        "cutoff": config["tractography"]["cutoff"],
        "seed_region_id": config["connectome"]["seed_region_id"],
        "input_dir": config["study"]["input_dir"],
        "output_dir": config["study"]["output_dir"],
        "preproc_dir": config["study"]["preproc_dir"],
        "references": config["references"],
    })


# ============================================================================
# Section C: Toolchain Environment
# ============================================================================

ToolchainConfig = namedtuple("ToolchainConfig", ["env"])

_MINIMAL_ENV_KEYS = ("HOME", "USER", "LOGNAME", "LANG", "LC_ALL", "TMPDIR", "TERM")
_DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"


def build_toolchain_config(toolchain_cfg, base_environ=None):
    """
    Build the immutable environment every external command is launched with.

    The base environment is snapshotted once (the whole process environment,
    or only a minimal set of variables when inherit_environment is false),
    then the FSL, FreeSurfer, ANTs and MRtrix3 locations from the config are
    layered on top, followed by any explicit `env` entries.

    Returns
    -------
    ToolchainConfig
    """
    source = dict(os.environ if base_environ is None else base_environ)

    if toolchain_cfg.get("inherit_environment", True):
        env = source
    else:
        env = {k: source[k] for k in _MINIMAL_ENV_KEYS if k in source}
        env["PATH"] = _DEFAULT_PATH

    prepend = []
    if toolchain_cfg.get("fsl_dir"):
        env["FSLDIR"] = toolchain_cfg["fsl_dir"]
        env.setdefault("FSLOUTPUTTYPE", "NIFTI_GZ")
        prepend.append(os.path.join(toolchain_cfg["fsl_dir"], "bin"))
    if toolchain_cfg.get("freesurfer_home"):
        env["FREESURFER_HOME"] = toolchain_cfg["freesurfer_home"]
        prepend.append(os.path.join(toolchain_cfg["freesurfer_home"], "bin"))
    if toolchain_cfg.get("ants_path"):
        # antsRegistrationSyN*.sh expect a trailing slash
        env["ANTSPATH"] = toolchain_cfg["ants_path"].rstrip("/") + "/"
        prepend.append(toolchain_cfg["ants_path"])
    if toolchain_cfg.get("mrtrix_bin"):
        prepend.append(toolchain_cfg["mrtrix_bin"])
    prepend.extend(toolchain_cfg.get("path_prepend") or [])

    path_parts = prepend + [p for p in env.get("PATH", "").split(os.pathsep) if p]
    env["PATH"] = os.pathsep.join(path_parts)

    env.update(toolchain_cfg.get("env") or {})
    return ToolchainConfig(env=MappingProxyType(env))


def stage_environment(toolchain, threads, gpu_device=None):
    """
    Environment for one stage invocation: the toolchain environment plus the
    slot's thread budget and, for GPU-eligible stages, its device binding.
    """
    env = dict(toolchain.env)
    env["OMP_NUM_THREADS"] = str(threads)
    env["ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS"] = str(threads)
    if gpu_device is not None:
        env["CUDA_VISIBLE_DEVICES"] = str(gpu_device)
        env["CUDA_DEVICE_ORDER"] = "PCI_BUS_ID"
    return env


def verify_toolchain(toolchain, executables, logger):
    """
    Verify every executable named by the pipeline resolves on the toolchain PATH.

    Raises
    ------
    OrchestratorError
        Listing every executable that could not be found.
    """
    search_path = toolchain.env.get("PATH", "")
    missing = []
    for exe in sorted(executables):
        resolved = shutil.which(exe, path=search_path)
        if resolved is None:
            missing.append(exe)
        else:
            logger.debug("Found %s: %s", exe, resolved)

    if missing:
        raise OrchestratorError(
            f"Required executable(s) not found on the toolchain PATH: {missing}. "
            f"Check the toolchain section of the study config."
        )
    logger.info("Toolchain verified: %d executable(s) found.", len(executables))


# ============================================================================
# Section D: Reference Files and Output Directory
# ============================================================================

def check_output_writable(output_dir):
    """Create output_dir if needed and confirm a file can be written in it."""
    try:
        os.makedirs(output_dir, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=output_dir, prefix=".write_test_"):
            pass
    except OSError as e:
        raise OrchestratorError(f"Output directory is not writable: {output_dir} ({e})")


def prepare_reference_files(references, reference_dir, logger):
    """
    Validate the shared reference files and stage the template.

    Every configured reference must exist and be non-empty. The template is
    copied into reference_dir (once; an existing copy of the same size is
    reused) so that every subject registers against the same file for the
    lifetime of the output directory.

    Parameters
    ----------
    references : dict
        The 'references' section of the config (absolute paths or None).
    reference_dir : str
    logger : logging.Logger

    Returns
    -------
    dict
        Reference role -> path that stages should read.
    """
    prepared = {}
    for role, path in references.items():
        if path is None:
            continue
        if not os.path.isfile(path):
            raise OrchestratorError(f"Reference file '{role}' not found: {path}")
        if os.path.getsize(path) == 0:
            raise OrchestratorError(f"Reference file '{role}' is empty: {path}")
        prepared[role] = path

    if "template" in prepared:
        os.makedirs(reference_dir, exist_ok=True)
        target = os.path.join(reference_dir, os.path.basename(prepared["template"]))
        src_size = os.path.getsize(prepared["template"])
        if os.path.isfile(target) and os.path.getsize(target) == src_size:
            logger.info("Template already staged: %s", target)
        else:
            shutil.copy2(prepared["template"], target)
            logger.info("Template copied to reference directory: %s", target)
        prepared["template"] = target

    logger.info("Reference files prepared: %s", sorted(prepared))
    return prepared


# ============================================================================
# Section E: Roster Parsing
# ============================================================================

_SUBJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_subject_id(sub_id):
    """Subject ids become directory names, so reject anything path-like."""
    if not _SUBJECT_ID_RE.match(sub_id):
        raise OrchestratorError(
            f"Invalid subject ID {sub_id!r}: use letters, digits, '.', '_' or '-' "
            f"and start with a letter or digit."
        )
    return sub_id


def parse_subject_list(path, logger):
    """
    Parse a plain-text subject list file.

    Blank lines and '#'-prefixed lines are ignored. Duplicates are left for
    build_roster() to report.

    Returns
    -------
    list of str
    """
    if not os.path.isfile(path):
        raise OrchestratorError(f"Subject list not found: {path}")

    sub_ids = []
    with open(path) as f:
        for line in f:
            s = line.strip()
            if not s or s.startswith("#"):
                continue
            sub_ids.append(s)

    logger.debug("Read %d subject ID(s) from %s", len(sub_ids), path)
    return sub_ids


def subjects_from_range(start, stop, pattern="{}"):
    """
    Expand an inclusive numeric range into subject IDs (like `seq start stop`).

    >>> subjects_from_range(1001, 1003, "mgh_{}")
    ['mgh_1001', 'mgh_1002', 'mgh_1003']
    """
    if "{}" not in pattern:
        raise OrchestratorError(f"Subject pattern must contain '{{}}', got: {pattern!r}")
    if not (_is_int(start) and _is_int(stop)) or stop < start:
        raise OrchestratorError(f"Invalid subject range: {start}..{stop}")
    return [pattern.replace("{}", str(n)) for n in range(start, stop + 1)]


def subjects_from_table(path, column):
    """Read subject IDs from one column of a CSV/TSV participants table."""
    if not os.path.isfile(path):
        raise OrchestratorError(f"Participants table not found: {path}")
    sep = "\t" if path.endswith((".tsv", ".txt")) else ","
    table = pd.read_csv(path, sep=sep, dtype=str)
    if column not in table.columns:
        raise OrchestratorError(
            f"Column '{column}' not found in {path}. Available: {list(table.columns)}"
        )
    return [s.strip() for s in table[column].dropna() if s.strip()]


def build_roster(roster_cfg, logger):
    """
    Assemble the ordered roster from every configured source.

    Sources are read in this order: explicit subjects, subject list file,
    numeric range, participants table. Duplicate IDs produce a warning and
    are skipped.

    Returns
    -------
    list of str
        Ordered list of unique subject IDs.
    """
    candidates = [str(s).strip() for s in (roster_cfg.get("subjects") or [])]

    if roster_cfg.get("subject_list"):
        candidates.extend(parse_subject_list(roster_cfg["subject_list"], logger))

    if roster_cfg.get("range"):
        bounds = roster_cfg["range"]
        if not isinstance(bounds, (list, tuple)) or len(bounds) != 2:
            raise OrchestratorError(f"roster.range must be [start, stop], got: {bounds!r}")
        candidates.extend(subjects_from_range(bounds[0], bounds[1], roster_cfg.get("pattern") or "{}"))

    if roster_cfg.get("table"):
        candidates.extend(subjects_from_table(roster_cfg["table"], roster_cfg.get("column") or "participant_id"))

    sub_ids, seen = [], set()
    for s in candidates:
        if not s:
            continue
        validate_subject_id(s)
        if s in seen:
            logger.warning("Duplicate subject ID '%s' in roster, skipping.", s)
            continue
        seen.add(s)
        sub_ids.append(s)

    if not sub_ids:
        raise OrchestratorError("Roster is empty (no subjects given or no valid entries found).")
    return sub_ids


# ============================================================================
# Section F: Subject Layout and Completion Oracle
# ============================================================================

SUBJECT_SUBDIRS = {
    "registration": "01_registration",
    "tractography": "02_tractography",
    "connectome": "03_connectome",
}


def subject_paths(config, sub_id):
    """
    Fixed working-directory layout for one subject.

    Returns
    -------
    dict
        root, dwi, registration, tractography, connectome, log_file.
    """
    study = config["study"]
    root = os.path.join(study["output_dir"], sub_id)
    paths = {
        "root": root,
        "dwi": os.path.join(study["preproc_dir"], sub_id, "dwi"),
        "log_file": os.path.join(study["output_dir"], "logs", f"{sub_id}.log"),
    }
    for key, dirname in SUBJECT_SUBDIRS.items():
        paths[key] = os.path.join(root, dirname)
    return paths


def terminal_artifacts(config, sub_id):
    """Final outputs whose presence marks a subject as complete for the mode."""
    paths = subject_paths(config, sub_id)
    if config["pipeline"]["mode"] == "preproc":
        return [os.path.join(paths["dwi"], "wmfod.mif")]
    return [
        os.path.join(paths["connectome"], "connectivity_matrix.csv"),
        os.path.join(paths["connectome"], "assignments.csv"),
    ]


def incomplete_artifacts(artifacts):
    """
    Return the artifacts that are missing, zero-length or not regular files.

    Read-only: only stats the files, so it is safe to call from any thread at
    any time.
    """
    incomplete = []
    for path in artifacts:
        try:
            st = os.stat(path)
        except OSError:
            incomplete.append(path)
            continue
        if not stat.S_ISREG(st.st_mode) or st.st_size == 0:
            incomplete.append(path)
    return incomplete


def is_complete(artifacts):
    """True iff every terminal artifact is an existing, non-empty file."""
    return len(artifacts) > 0 and not incomplete_artifacts(artifacts)


def partition_roster(pipelines, logger):
    """
    Split subject pipelines into (already_complete, remaining) id lists.

    Parameters
    ----------
    pipelines : list
        SubjectPipeline records (see dwi_stages.build_pipeline), in roster order.
    """
    already_complete, remaining = [], []
    for pipeline in pipelines:
        if is_complete(pipeline.terminal_artifacts):
            already_complete.append(pipeline.sub_id)
            logger.info("sub %s: terminal artifacts present, skipping.", pipeline.sub_id)
        else:
            remaining.append(pipeline.sub_id)
            empty = [
                p for p in pipeline.terminal_artifacts
                if os.path.isfile(p) and os.path.getsize(p) == 0
            ]
            if empty:
                logger.warning(
                    "sub %s: zero-length terminal artifact(s) from an earlier run: %s; "
                    "reprocessing from the first stage.",
                    pipeline.sub_id, empty
                )
    return already_complete, remaining


# ============================================================================
# Section G: Results, Job Log and Run Report
# ============================================================================

class StageFailure(namedtuple("StageFailure", ["stage", "exit_code", "message"])):
    """A stage that did not succeed. Returned, never raised."""
    __slots__ = ()


class PipelineResult(namedtuple("PipelineResult", [
    "sub_id", "status", "stage", "exit_code", "message",
    "started_at", "finished_at", "log_file",
])):
    """
    Outcome of one subject pipeline.

    status is one of "succeeded", "failed", "cancelled" or "planned" (dry run).
    stage / exit_code / message describe the failure and are None otherwise.
    """
    __slots__ = ()

    @property
    def runtime_seconds(self):
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


JOBLOG_FIELDS = ["Subject", "Start", "End", "Runtime", "Status", "ExitCode", "Stage", "LogFile"]


class JobLog(object):
    """
    Append-only, tab-separated job log with one line per finished subject.

    Each record is written and flushed while holding a lock, so worker threads
    can share one instance.
    """

    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        if not os.path.isfile(path) or os.path.getsize(path) == 0:
            with open(path, "w", newline="") as f:
                f.write("\t".join(JOBLOG_FIELDS) + "\n")

    def record(self, result):
        row = [
            result.sub_id,
            result.started_at.isoformat(timespec="seconds") if result.started_at else "",
            result.finished_at.isoformat(timespec="seconds") if result.finished_at else "",
            f"{result.runtime_seconds:.1f}",
            result.status,
            "" if result.exit_code is None else str(result.exit_code),
            result.stage or "",
            result.log_file or "",
        ]
        with self._lock:
            with open(self.path, "a", newline="") as f:
                f.write("\t".join(row) + "\n")


class RunReport(namedtuple("RunReport", [
    "roster", "already_complete", "succeeded", "failed", "cancelled", "planned",
    "started_at", "finished_at", "config", "interrupted",
])):
    """Write-once summary of one cohort run."""
    __slots__ = ()

    @property
    def roster_size(self):
        return len(self.roster)

    @property
    def remaining(self):
        done = set(self.already_complete)
        return [s for s in self.roster if s not in done]

    @property
    def n_completed(self):
        return len(self.already_complete) + len(self.succeeded)

    @property
    def n_failed(self):
        return len(self.failed)

    @property
    def failed_subjects(self):
        return [r.sub_id for r in self.failed]

    @property
    def wall_seconds(self):
        return (self.finished_at - self.started_at).total_seconds()


def _freeze(value):
    """Read-only view of nested config values: dicts become mappingproxies, lists tuples."""
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def build_run_report(roster, already_complete, results, config, started_at, finished_at,
                     interrupted=False):
    """
    Aggregate per-subject results into a RunReport.

    Pure: nothing is read from disk. Subject lists follow roster order
    regardless of the order in which results completed.
    """
    by_subject = {r.sub_id: r for r in results}
    ordered = [by_subject[s] for s in roster if s in by_subject]
    complete = set(already_complete)

    def _ids(status):
        return tuple(r.sub_id for r in ordered if r.status == status)

    return RunReport(
        roster=tuple(roster),
        already_complete=tuple(s for s in roster if s in complete),
        succeeded=_ids("succeeded"),
        failed=tuple(r for r in ordered if r.status == "failed"),
        cancelled=_ids("cancelled"),
        planned=_ids("planned"),
        started_at=started_at,
        finished_at=finished_at,
        config=_freeze(config_snapshot(config)),
        interrupted=bool(interrupted),
    )


SUMMARY_FIELDS = [
    "sub_id", "status", "runtime_seconds", "failed_stage", "exit_code",
    "error_message", "log_file",
]


def write_summary_csv(report, results, summary_file, logger):
    """Write one CSV row per roster subject (already-complete ones as 'skipped')."""
    os.makedirs(os.path.dirname(os.path.abspath(summary_file)), exist_ok=True)
    by_subject = {r.sub_id: r for r in results}

    rows = []
    for sub_id in report.roster:
        r = by_subject.get(sub_id)
        if r is None:
            rows.append({
                "sub_id": sub_id, "status": "skipped", "runtime_seconds": 0.0,
                "failed_stage": "", "exit_code": "", "error_message": "", "log_file": "",
            })
            continue
        rows.append({
            "sub_id": sub_id,
            "status": r.status,
            "runtime_seconds": round(r.runtime_seconds, 2),
            "failed_stage": r.stage or "",
            "exit_code": "" if r.exit_code is None else r.exit_code,
            "error_message": r.message or "",
            "log_file": r.log_file or "",
        })

    with open(summary_file, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=SUMMARY_FIELDS)
        writer.writeheader()
        writer.writerows(rows)
    logger.info("Summary CSV written: %s", summary_file)


def format_run_report(report):
    """Render a RunReport as human-readable text."""
    lines = [
        "=" * 70,
        "DWI CONNECTOME RUN REPORT",
        "=" * 70,
        f"Started         : {report.started_at.isoformat(timespec='seconds')}",
        f"Finished        : {report.finished_at.isoformat(timespec='seconds')}",
        f"Wall clock      : {report.wall_seconds:.1f} s",
        "",
        f"Roster size     : {report.roster_size}",
        f"Already complete: {len(report.already_complete)}",
        f"Newly succeeded : {len(report.succeeded)}",
        f"Failed          : {report.n_failed}",
        f"Cancelled       : {len(report.cancelled)}",
    ]
    if report.planned:
        lines.append(f"Planned (dry run): {len(report.planned)}")
    if report.interrupted:
        lines.append("Interrupted     : yes (pending subjects were cancelled)")
    lines.append(f"Completed total : {report.n_completed}")

    if report.failed:
        lines += ["", "Failed subjects:"]
        for r in report.failed:
            code = "n/a" if r.exit_code is None else r.exit_code
            lines.append(f"  {r.sub_id}: stage '{r.stage}' (exit {code}) {r.message or ''}".rstrip())
            if r.log_file:
                lines.append(f"    log: {r.log_file}")
    if report.cancelled:
        lines += ["", "Cancelled subjects: " + ", ".join(report.cancelled)]

    lines += ["", "Configuration:"]
    for key, value in report.config.items():
        if isinstance(value, MappingProxyType):
            lines.append(f"  {key}:")
            lines += [f"    {k}: {v}" for k, v in value.items()]
        elif isinstance(value, tuple):
            lines.append(f"  {key}: {', '.join(map(str, value)) or 'none'}")
        else:
            lines.append(f"  {key}: {value}")
    lines.append("=" * 70)
    return "\n".join(lines) + "\n"


def write_run_report(report, report_file, logger):
    os.makedirs(os.path.dirname(os.path.abspath(report_file)), exist_ok=True)
    with open(report_file, "w") as f:
        f.write(format_run_report(report))
    logger.info("Run report written: %s", report_file)


# ============================================================================
# Section H: Connectome QC
# ============================================================================

def load_connectivity_matrix(matrix_path):
    """Load a tck2connectome CSV matrix as a 2-D float array."""
    matrix = np.loadtxt(matrix_path, delimiter=",", ndmin=2)
    return matrix


def compute_connectome_qc(matrix_path, sub_id, logger):
    """
    Summarize a connectivity matrix for group-level QC review.

    Nothing here gates success: the numbers are recorded so that exclusion
    decisions can be made post hoc.

    Returns
    -------
    dict
        QC metrics dictionary.
    """
    matrix = load_connectivity_matrix(matrix_path)
    n_rows, n_cols = matrix.shape
    is_square = n_rows == n_cols

    finite = np.isfinite(matrix)
    n_nonfinite = int(np.size(matrix) - np.count_nonzero(finite))
    clean = np.where(finite, matrix, 0.0)

    qc = {
        "sub_id": sub_id,
        "matrix_file": matrix_path,
        "n_nodes": int(n_rows),
        "is_square": bool(is_square),
        "n_nonfinite": n_nonfinite,
    }

    if is_square and n_rows > 1:
        off_diag = ~np.eye(n_rows, dtype=bool)
        upper = np.triu(clean, k=1)
        strength = clean.sum(axis=1)
        qc.update({
            "is_symmetric": bool(np.allclose(clean, clean.T)),
            "density": round(float(np.count_nonzero(clean[off_diag]) / off_diag.sum()), 6),
            "total_weight": float(upper.sum()),
            "max_weight": float(clean.max()),
            # node labels from tck2connectome are 1-based
            "zero_strength_nodes": [int(i) + 1 for i in np.flatnonzero(strength == 0)],
        })
    else:
        logger.warning("Connectivity matrix for %s is not a square multi-node matrix: %s",
                       sub_id, matrix.shape)

    if n_nonfinite:
        logger.warning("Connectivity matrix for %s contains %d non-finite value(s).", sub_id, n_nonfinite)
    logger.info(
        "Connectome QC for %s: %d nodes, density %s",
        sub_id, n_rows, qc.get("density", "n/a")
    )
    return qc


def read_atlas_labels(labels_path):
    """
    Read an atlas lookup table (index + name per line, comma, tab or space
    separated, '#' comments). Lines whose first column is not an integer
    (e.g. a header) are dropped.

    Returns
    -------
    dict
        int label -> str name
    """
    # LUTs often carry extra RGBA columns, so keep only the first two fields
    rows = []
    with open(labels_path) as f:
        for line in f:
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            parts = re.split(r"[,\t ]+", line)
            if len(parts) >= 2:
                rows.append(parts[:2])

    table = pd.DataFrame(rows, columns=["index", "name"])
    table["index"] = pd.to_numeric(table["index"], errors="coerce")
    table = table.dropna(subset=["index", "name"])
    return {int(i): str(n) for i, n in zip(table["index"], table["name"])}


def write_labeled_matrix(matrix_path, labels_path, out_path, seed_region_id, logger):
    """
    Write the connectivity matrix with atlas region names as row/column headers.

    Node i of the matrix is atlas label i (1-based). The seed region added to
    the atlas is named "seed" unless the lookup table already names it.
    """
    matrix = load_connectivity_matrix(matrix_path)
    labels = read_atlas_labels(labels_path)
    if seed_region_id is not None:
        labels.setdefault(seed_region_id, "seed")

    names = [labels.get(i + 1, f"node_{i + 1}") for i in range(matrix.shape[0])]
    unnamed = sum(1 for i in range(matrix.shape[0]) if (i + 1) not in labels)
    if unnamed:
        logger.warning("%d matrix node(s) have no entry in %s.", unnamed, labels_path)

    frame = pd.DataFrame(matrix, index=names, columns=names[:matrix.shape[1]])
    frame.to_csv(out_path)
    logger.info("Labelled connectivity matrix written: %s", out_path)
    return out_path


def plot_connectome_heatmap(matrix_path, out_path, title, logger):
    """Save a log-scaled heatmap of the connectivity matrix."""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    matrix = load_connectivity_matrix(matrix_path)
    scaled = np.log1p(np.clip(np.nan_to_num(matrix), 0, None))

    fig, ax = plt.subplots(figsize=(8, 7))
    im = ax.imshow(scaled, cmap="viridis", interpolation="none")
    ax.set_title(title)
    ax.set_xlabel("Node")
    ax.set_ylabel("Node")
    fig.colorbar(im, ax=ax, label="log(1 + weight)")
    fig.savefig(out_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    logger.info("Connectome heatmap saved: %s", out_path)
    return out_path


def save_qc_json(qc_metrics, out_path, logger):
    """Save QC metrics dict to a JSON file."""
    os.makedirs(os.path.dirname(out_path), exist_ok=True)
    with open(out_path, "w") as f:
        json.dump(qc_metrics, f, indent=2, default=str)
    logger.info("QC metrics saved: %s", out_path)


def timestamp():
    """Filesystem-safe timestamp for per-run file names."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")
