#!/usr/bin/env python3

# ============================================================================
# PER-SUBJECT ORCHESTRATOR FOR DWI CONNECTOME PROCESSING
#
# Runs one subject's stage chain (see dwi_stages.py) strictly in order. Each
# stage is an external command launched with the toolchain environment, the
# slot's thread budget and, for GPU-eligible stages, the slot's GPU. Command
# output is appended to the subject's log file. The first failing stage ends
# the subject: later stages are never started and partial outputs are left in
# place for inspection.
#
# Called in-process by run_orchestrator.py for every subject of a cohort, or
# directly for one subject:
#   python orchestrate_subject.py --config study.yaml --subj_id mgh_1001 \
#     --threads 8 [--dry-run]
#
# Version: 1.0
# Last updated: 10/18/26
# ============================================================================

import os
import sys
import shlex
import signal
import argparse
import subprocess
from datetime import datetime

from orchestrator_utils import (
    OrchestratorError,
    StageFailure,
    PipelineResult,
    ROOT_LOGGER_NAME,
    setup_logging,
    get_subject_logger,
    close_logging,
    load_orchestrator_config,
    build_toolchain_config,
    stage_environment,
    verify_toolchain,
    check_output_writable,
    prepare_reference_files,
    validate_subject_id,
    incomplete_artifacts,
    compute_connectome_qc,
    write_labeled_matrix,
    plot_connectome_heatmap,
    save_qc_json,
)
from dwi_stages import (
    build_subject_pipeline,
    pipeline_executables,
    render_command,
    stage_threads,
)

# Exit codes for stage failures that have no ordinary process exit status
EXIT_TIMEOUT = 124
EXIT_NOT_LAUNCHED = 127


# ============================================================================
# Stage Executor
# ============================================================================

def _last_output_line(log_file, offset):
    """Last non-empty line written to log_file after byte offset, or None."""
    try:
        with open(log_file, "rb") as f:
            f.seek(offset)
            tail = f.read().decode("utf-8", errors="replace")
    except OSError:
        return None
    lines = [ln.strip() for ln in tail.splitlines() if ln.strip()]
    return lines[-1] if lines else None


def _kill_process_group(proc):
    """SIGKILL a stage's process group (the tool and everything it spawned), then reap it."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    proc.wait()


class StageExecutor(object):
    """
    Launches stage commands as blocking subprocesses.

    Parameters
    ----------
    toolchain : ToolchainConfig
        Immutable environment every command is started with.
    stage_timeout : float or None
        Optional per-stage deadline in seconds; on expiry the stage and any
        processes it started are killed and reported with exit code 124.
    dry_run : bool
        If True, commands are logged but never launched.
    """

    def __init__(self, toolchain, stage_timeout=None, dry_run=False):
        self.toolchain = toolchain
        self.stage_timeout = stage_timeout
        self.dry_run = dry_run

    def execute(self, stage, threads, log_file, logger, gpu_device=None):
        """
        Run one stage in its working directory.

        Returns
        -------
        StageFailure or None
            None on success. A non-zero exit, a command that cannot be
            launched, an expired deadline or a killed process are all
            returned as a StageFailure rather than raised.
        """
        cmd = render_command(stage, threads)
        cmd_str = shlex.join(cmd)

        if self.dry_run:
            logger.info("[DRY RUN] (cwd %s) %s", stage.workdir, cmd_str)
            return None

        os.makedirs(stage.workdir, exist_ok=True)
        env = stage_environment(self.toolchain, threads, gpu_device if stage.gpu else None)

        with open(log_file, "ab") as log_fh:
            log_fh.write(f"$ {cmd_str}\n".encode("utf-8"))
            log_fh.flush()
            offset = log_fh.tell()

            # Own session, so the whole process tree can be killed together
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=stage.workdir,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_fh,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as e:
                return StageFailure(stage.name, EXIT_NOT_LAUNCHED, f"Could not launch '{cmd[0]}': {e}")

            try:
                returncode = proc.wait(timeout=self.stage_timeout)
            except subprocess.TimeoutExpired:
                _kill_process_group(proc)
                logger.warning("Stage '%s' exceeded %s s; killed its process group.",
                               stage.name, self.stage_timeout)
                return StageFailure(
                    stage.name, EXIT_TIMEOUT,
                    f"Stage exceeded its {self.stage_timeout} s deadline and was killed",
                )
            except BaseException:
                _kill_process_group(proc)
                raise

        if returncode == 0:
            return None

        if returncode < 0:
            message = f"Terminated by signal {-returncode}"
        else:
            message = _last_output_line(log_file, offset) or f"Exit code {returncode}"
        return StageFailure(stage.name, returncode, message)


# ============================================================================
# Subject Pipeline Runner
# ============================================================================

def run_connectome_qc(pipeline, config, references, logger):
    """
    Optional QC on a finished connectome. Problems are logged as warnings and
    never change the subject's outcome.
    """
    qc_cfg = config["qc"]
    if not qc_cfg["enabled"] or config["pipeline"]["mode"] == "preproc":
        return

    conn_dir = pipeline.paths["connectome"]
    matrix_path = os.path.join(conn_dir, "connectivity_matrix.csv")
    sub_id = pipeline.sub_id
    seed_id = config["connectome"]["seed_region_id"]

    try:
        qc = compute_connectome_qc(matrix_path, sub_id, logger)
        qc["seed_region_id"] = seed_id
        qc["streamlines"] = config["tractography"]["streamlines"]
        save_qc_json(qc, os.path.join(conn_dir, f"{sub_id}_connectome_qc.json"), logger)

        if references.get("atlas_labels"):
            write_labeled_matrix(
                matrix_path, references["atlas_labels"],
                os.path.join(conn_dir, "connectivity_matrix_labeled.csv"),
                seed_id, logger,
            )
        if qc_cfg["heatmap"]:
            plot_connectome_heatmap(
                matrix_path, os.path.join(conn_dir, f"{sub_id}_connectome.png"),
                f"{sub_id} structural connectome", logger,
            )
    except Exception as e:
        logger.warning("Connectome QC failed for %s: %s", sub_id, e, exc_info=True)


def run_subject_pipeline(pipeline, executor, threads, log_file, logger, gpu_device=None,
                         after_success=None):
    """
    Execute a subject's stages in declared order and return its outcome.

    Stage k starts only after stage k-1 returned success. On the first
    StageFailure the remaining stages are skipped and the failure is
    returned. When every stage succeeds, the terminal artifacts are checked
    with the completion rules before the subject is reported as succeeded.

    Any unexpected exception is caught here and reported as a failure of
    this subject only.

    Parameters
    ----------
    pipeline : SubjectPipeline
    executor : StageExecutor
        Anything with execute(stage, threads, log_file, logger, gpu_device).
    threads : int
        Thread budget of the worker slot running this subject.
    log_file : str
        Subject log; stage output is appended here.
    logger : logging.Logger
        Subject logger (writes to log_file).
    gpu_device : str or None
        GPU bound to the worker slot, passed to GPU-eligible stages.
    after_success : callable or None
        Called with (pipeline, logger) after a verified success (e.g. QC).

    Returns
    -------
    PipelineResult
    """
    sub_id = pipeline.sub_id
    started_at = datetime.now()
    n_stages = len(pipeline.stages)
    dry_run = getattr(executor, "dry_run", False)

    def _result(status, failure=None):
        return PipelineResult(
            sub_id=sub_id,
            status=status,
            stage=failure.stage if failure else None,
            exit_code=failure.exit_code if failure else None,
            message=failure.message if failure else None,
            started_at=started_at,
            finished_at=datetime.now(),
            log_file=log_file,
        )

    logger.info("=" * 70)
    logger.info("sub %s: starting %d stage(s) with %d thread(s)%s",
                sub_id, n_stages, threads,
                f" on GPU {gpu_device}" if gpu_device is not None else "")
    logger.info("=" * 70)

    try:
        if not dry_run:
            missing = sorted(
                f"{role}: {path}" for role, path in pipeline.raw_inputs.items()
                if not os.path.isfile(path)
            )
            if missing:
                failure = StageFailure("check_inputs", None, "Missing input file(s): " + "; ".join(missing))
                logger.error("sub %s: %s", sub_id, failure.message)
                return _result("failed", failure)

        for stage in pipeline.stages:
            n = stage_threads(stage, threads)
            logger.info("Stage %02d/%02d [%s] starting (%s)", stage.index, n_stages, stage.name, stage.executable)
            t0 = datetime.now()

            failure = executor.execute(stage, n, log_file, logger, gpu_device=gpu_device)

            elapsed = (datetime.now() - t0).total_seconds()
            if failure is not None:
                logger.error(
                    "Stage %02d/%02d [%s] FAILED after %.1f s (exit code %s): %s",
                    stage.index, n_stages, stage.name, elapsed, failure.exit_code, failure.message
                )
                logger.error("Failing command: %s", shlex.join(render_command(stage, n)))
                logger.error("sub %s: %d later stage(s) not attempted.", sub_id, n_stages - stage.index)
                return _result("failed", failure)

            logger.info("Stage %02d/%02d [%s] done in %.1f s", stage.index, n_stages, stage.name, elapsed)

        if dry_run:
            logger.info("[DRY RUN] sub %s: plan complete, nothing executed.", sub_id)
            return _result("planned")

        incomplete = incomplete_artifacts(pipeline.terminal_artifacts)
        if incomplete:
            failure = StageFailure(
                "verify_outputs", None,
                "Terminal artifact(s) missing or empty after all stages succeeded: " + ", ".join(incomplete),
            )
            logger.error("sub %s: %s", sub_id, failure.message)
            return _result("failed", failure)

        if after_success is not None:
            after_success(pipeline, logger)

    except Exception as e:
        logger.exception("sub %s: unexpected error", sub_id)
        return _result("failed", StageFailure("internal_error", None, f"{type(e).__name__}: {e}"))

    result = _result("succeeded")
    logger.info("sub %s: SUCCEEDED in %.1f s", sub_id, result.runtime_seconds)
    return result


# ============================================================================
# Main
# ============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Run the DWI connectome pipeline for a single subject."
    )
    parser.add_argument(
        "--config", type=str, required=True,
        help="Path to the study YAML configuration file."
    )
    parser.add_argument(
        "--subj_id", type=str, required=True,
        help="Subject ID (e.g. mgh_1001)."
    )
    parser.add_argument(
        "--threads", type=int, default=None,
        help="Thread budget for this subject (default: resources.threads_per_job)."
    )
    parser.add_argument(
        "--gpu", type=str, default=None,
        help="GPU device for GPU-eligible stages (default: first of resources.gpu_devices)."
    )
    parser.add_argument(
        "--mode", choices=["full", "preproc", "connectome"], default=None,
        help="Pipeline segment(s) to run (default: pipeline.mode from the config)."
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Validate config and log every command without executing."
    )
    parser.add_argument(
        "--log-file", type=str, default=None,
        help="Subject log file (default: {output_dir}/logs/{subj_id}.log)."
    )
    args = parser.parse_args()

    console = setup_logging(ROOT_LOGGER_NAME)

    try:
        validate_subject_id(args.subj_id)
        config = load_orchestrator_config(
            args.config, console,
            overrides={"pipeline": {"mode": args.mode}, "resources": {"threads_per_job": args.threads}},
        )
        output_dir = config["study"]["output_dir"]
        check_output_writable(output_dir)
        references = prepare_reference_files(
            config["references"], os.path.join(output_dir, "reference"), console
        )
        toolchain = build_toolchain_config(config["toolchain"])
        pipeline = build_subject_pipeline(config, args.subj_id, references)
        if not args.dry_run:
            verify_toolchain(toolchain, pipeline_executables([pipeline]), console)
    except OrchestratorError as e:
        console.error("Fatal: %s", e)
        sys.exit(1)

    log_file = os.path.abspath(args.log_file or os.path.join(output_dir, "logs", f"{args.subj_id}.log"))
    logger = get_subject_logger(args.subj_id, log_file)
    gpus = config["resources"]["gpu_devices"]
    gpu = args.gpu if args.gpu is not None else (gpus[0] if gpus else None)

    executor = StageExecutor(
        toolchain, stage_timeout=config["resources"]["stage_timeout"], dry_run=args.dry_run
    )
    result = run_subject_pipeline(
        pipeline, executor, config["resources"]["threads_per_job"], log_file, logger,
        gpu_device=gpu,
        after_success=lambda p, lg: run_connectome_qc(p, config, references, lg),
    )
    close_logging(logger)

    if result.status == "failed":
        console.error(
            "sub %s FAILED at stage '%s' (exit code %s). See %s",
            args.subj_id, result.stage, result.exit_code, log_file
        )
        sys.exit(1)
    console.info("sub %s %s (%.1f s)", args.subj_id, result.status, result.runtime_seconds)


if __name__ == "__main__":
    main()
