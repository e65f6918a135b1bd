#!/usr/bin/env python3

# ============================================================================
# PARALLEL COHORT SCHEDULER FOR THE DWI CONNECTOME PIPELINE
#
# Runs the per-subject DWI -> structural connectome pipeline (see
# orchestrate_subject.py) across a roster of subjects with at most
# `max_concurrent` subjects in flight. Subjects whose terminal artifacts
# already exist are skipped, so an interrupted or partially failed run can be
# resumed by invoking the same command again. A failing subject never stops
# its siblings.
#
# Progress is tracked with a rolling status line updated every 2 seconds.
# A job log is appended as each subject finishes, and a summary CSV plus a
# text run report are written after all subjects complete (or on Ctrl+C).
#
# Usage:
#   python run_orchestrator.py \
#     --config study.yaml \
#     --subject-range 1001 1035 --subject-pattern mgh_{} \
#     -j 4 --threads-per-job 8 \
#     [--dry-run] [--qc] [--strict] [--summary-file summary.csv]
#
# Subject list format (--subject-list):
#   Plain text, one subject ID per line.
#   Blank lines and lines starting with '#' are ignored.
#   Duplicate IDs produce a warning and are skipped.
#
# Exit codes:
#   0   - run completed (subjects may still have failed; see the report)
#   1   - precondition failure, or any subject failed with --strict
#   130 - interrupted by Ctrl+C
#
# Version: 1.0
# Last updated: 10/18/26
# ============================================================================

import os
import sys
import queue
import argparse
import threading
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor, as_completed

from orchestrator_utils import (
    OrchestratorError,
    PipelineResult,
    JobLog,
    ROOT_LOGGER_NAME,
    setup_logging,
    get_subject_logger,
    close_logging,
    load_orchestrator_config,
    build_toolchain_config,
    verify_toolchain,
    check_output_writable,
    prepare_reference_files,
    build_roster,
    partition_roster,
    build_run_report,
    write_summary_csv,
    write_run_report,
    timestamp,
)
from dwi_stages import build_subject_pipeline, pipeline_executables
from orchestrate_subject import StageExecutor, run_subject_pipeline, run_connectome_qc


# ============================================================================
# Per-subject worker
# ============================================================================

def _run_one(pipeline, ctx, slots, state, lock, cancel_event):
    """
    Run one subject pipeline on a free worker slot.

    Checks cancel_event before starting so that pending workers can be
    cleanly skipped on KeyboardInterrupt. The slot index selects the GPU
    (round-robin over gpu_devices) for the whole subject.

    Parameters
    ----------
    pipeline : SubjectPipeline
    ctx : dict
        executor, threads, gpu_devices, log_dir, after_success, job_log.
    slots : queue.Queue
        Free worker slot indices (one per pool thread).
    state : dict
        Shared progress state dict.
    lock : threading.Lock
    cancel_event : threading.Event

    Returns
    -------
    PipelineResult
    """
    sub_id = pipeline.sub_id
    log_file = pipeline.paths.get("log_file") or os.path.join(ctx["log_dir"], f"{sub_id}.log")

    # Bail out early if a cancel has been requested
    if cancel_event.is_set():
        result = _cancelled_result(sub_id, log_file, "Cancelled before start")
        ctx["job_log"].record(result)
        _tally(state, lock, result.status)
        return result

    slot = slots.get()
    gpus = ctx["gpu_devices"]
    gpu_device = gpus[slot % len(gpus)] if gpus else None

    with lock:
        state["running"].add(sub_id)
        state["peak"] = max(state["peak"], len(state["running"]))

    try:
        logger = get_subject_logger(sub_id, log_file)
        try:
            result = run_subject_pipeline(
                pipeline, ctx["executor"], ctx["threads"], log_file, logger,
                gpu_device=gpu_device, after_success=ctx["after_success"],
            )
        finally:
            close_logging(logger)

        ctx["job_log"].record(result)
        _tally(state, lock, result.status)
        return result

    finally:
        with lock:
            state["running"].discard(sub_id)
        slots.put(slot)


# ============================================================================
# Progress display
# ============================================================================

# Outcome counters kept in the shared progress state, in display order
PROGRESS_OUTCOMES = ("succeeded", "failed", "skipped", "cancelled", "planned")


def new_progress_state(n_skipped=0):
    """Shared state read by the progress line; mutate only under the run lock."""
    state = {"running": set(), "peak": 0}
    for outcome in PROGRESS_OUTCOMES:
        state["n_" + outcome] = 0
    state["n_skipped"] = n_skipped
    return state


def _tally(state, lock, status):
    with lock:
        state["n_" + status] += 1


def progress_line(state, lock, total, max_running=6):
    """
    Render the status line: subjects in flight and outcome counts.

    Cancelled and planned (dry-run) subjects are only listed once there are
    any, so a normal run reads "N succeeded, N failed, N skipped".
    """
    with lock:
        running = sorted(state["running"])
        counts = [(k, state["n_" + k]) for k in PROGRESS_OUTCOMES]

    shown = ", ".join(running[:max_running]) or "none"
    if len(running) > max_running:
        shown += f" (+{len(running) - max_running} more)"

    done = ", ".join(f"{n} {k}" for k, n in counts if n or k in PROGRESS_OUTCOMES[:3])
    n_done = sum(n for _, n in counts)
    return f"[{n_done:3d}/{total}] Running: {shown} | Done: {done}"


def _progress_loop(state, lock, total, stop_event):
    """Daemon thread: rewrite the progress line every 2 s until stop_event is set."""
    while not stop_event.is_set():
        sys.stdout.write("\r" + progress_line(state, lock, total)[:120])
        sys.stdout.flush()
        stop_event.wait(timeout=2.0)

    sys.stdout.write("\n")
    sys.stdout.flush()


# ============================================================================
# Scheduler
# ============================================================================

def _cancelled_result(sub_id, log_file, message):
    now = datetime.now()
    return PipelineResult(sub_id, "cancelled", None, None, message, now, now, log_file)


def _collect(future, sub_id, log_dir):
    """Result of a finished future; a crashed worker counts as a failed subject."""
    try:
        return future.result()
    except Exception as e:
        now = datetime.now()
        return PipelineResult(
            sub_id, "failed", "internal_error", None, f"{type(e).__name__}: {e}",
            now, now, os.path.join(log_dir, f"{sub_id}.log"),
        )


def run_cohort(roster, config, references=None, executor=None, pipeline_factory=None,
               max_concurrent=None, threads_per_job=None, job_log=None, logger=None,
               show_progress=False, cancel_event=None):
    """
    Drive every roster subject to completion with bounded parallelism.

    Subjects already complete (every terminal artifact present and non-empty)
    are skipped without invoking any stage. The rest are run on a pool of
    `max_concurrent` worker slots; each slot runs one subject at a time with
    `threads_per_job` threads. A failed subject only affects its own result.

    Parameters
    ----------
    roster : list of str
        Unique subject IDs in processing order.
    config : dict
        Validated study config.
    references : dict or None
        Prepared reference paths (see prepare_reference_files).
    executor : StageExecutor or None
        Defaults to a StageExecutor over the config's toolchain.
    pipeline_factory : callable or None
        sub_id -> SubjectPipeline. Defaults to build_subject_pipeline.
    max_concurrent, threads_per_job : int or None
        Default to the resources section of the config.
    job_log : JobLog or None
        Defaults to {output_dir}/logs/joblog_{timestamp}.tsv.
    logger : logging.Logger or None
    show_progress : bool
        Print the rolling progress line on stdout.
    cancel_event : threading.Event or None
        Setting it stops subjects that have not started yet.

    Returns
    -------
    tuple of (RunReport, list of PipelineResult)

    Raises
    ------
    OrchestratorError
        If a subject pipeline definition is invalid (nothing is run).
    """
    if logger is None:
        logger = setup_logging(ROOT_LOGGER_NAME)
    if references is None:
        references = {}
    res = config["resources"]
    max_concurrent = max_concurrent or res["max_concurrent"]
    threads_per_job = threads_per_job or res["threads_per_job"]
    if cancel_event is None:
        cancel_event = threading.Event()

    started_at = datetime.now()
    log_dir = os.path.join(config["study"]["output_dir"], "logs")

    if pipeline_factory is None:
        def pipeline_factory(sub_id):
            return build_subject_pipeline(config, sub_id, references)

    # Build (and validate) every pipeline before anything runs
    pipelines = [pipeline_factory(sub_id) for sub_id in roster]
    already_complete, remaining = partition_roster(pipelines, logger)

    logger.info(
        "Roster: %d subject(s), %d already complete, %d to run.",
        len(roster), len(already_complete), len(remaining)
    )

    if not remaining:
        logger.info("Nothing to do: every subject is already complete.")
        report = build_run_report(roster, already_complete, [], config, started_at, datetime.now())
        return report, []

    if executor is None:
        executor = StageExecutor(
            build_toolchain_config(config["toolchain"]),
            stage_timeout=res["stage_timeout"],
        )
    if job_log is None:
        job_log = JobLog(os.path.join(log_dir, f"joblog_{timestamp()}.tsv"))

    pending = set(remaining)
    ctx = {
        "executor": executor,
        "threads": threads_per_job,
        "gpu_devices": list(res["gpu_devices"]),
        "log_dir": log_dir,
        "job_log": job_log,
        "after_success": lambda p, lg: run_connectome_qc(p, config, references, lg),
    }

    slots = queue.Queue()
    for i in range(max_concurrent):
        slots.put(i)

    # ------------------------------------------------------------------
    # Shared state
    # ------------------------------------------------------------------
    state = new_progress_state(n_skipped=len(already_complete))
    lock = threading.Lock()
    stop_event = threading.Event()

    progress_thread = None
    if show_progress:
        # Background progress printer (daemon, auto-exits when main thread ends)
        progress_thread = threading.Thread(
            target=_progress_loop,
            args=(state, lock, len(roster), stop_event),
            daemon=True,
        )
        progress_thread.start()

    # ------------------------------------------------------------------
    # Parallel execution
    # ------------------------------------------------------------------
    results = []
    futures_done = set()
    future_to_sub = {}
    interrupted = False

    try:
        pool = ThreadPoolExecutor(max_workers=max_concurrent)

        try:
            for pipeline in pipelines:
                if pipeline.sub_id not in pending:
                    continue
                f = pool.submit(_run_one, pipeline, ctx, slots, state, lock, cancel_event)
                future_to_sub[f] = pipeline.sub_id

            # Collect results as they complete
            for future in as_completed(future_to_sub):
                sub_id = future_to_sub[future]
                futures_done.add(future)
                result = _collect(future, sub_id, log_dir)
                results.append(result)
                if result.status == "failed":
                    logger.warning(
                        "sub %s FAILED at stage '%s' (exit code %s). See %s",
                        sub_id, result.stage, result.exit_code, result.log_file
                    )
                else:
                    logger.info("sub %s %s (%.1f s)", sub_id, result.status, result.runtime_seconds)

        except KeyboardInterrupt:
            interrupted = True
            logger.warning(
                "Interrupted (Ctrl+C): cancelling pending subjects, "
                "waiting for in-flight subjects to finish..."
            )
            cancel_event.set()
            # shutdown(wait=True) waits for workers currently running a
            # subject; cancel_event stops the rest before their first stage.
            pool.shutdown(wait=True)

            # Collect results from futures that completed during the wait
            for f, sub_id in future_to_sub.items():
                if f in futures_done:
                    continue
                if f.done() and not f.cancelled():
                    results.append(_collect(f, sub_id, log_dir))
                else:
                    results.append(_cancelled_result(
                        sub_id, os.path.join(log_dir, f"{sub_id}.log"), "Cancelled by KeyboardInterrupt"
                    ))

            # Subjects the interrupt reached before they were submitted
            submitted = set(future_to_sub.values())
            for pipeline in pipelines:
                if pipeline.sub_id in pending and pipeline.sub_id not in submitted:
                    result = _cancelled_result(
                        pipeline.sub_id,
                        pipeline.paths.get("log_file") or os.path.join(log_dir, f"{pipeline.sub_id}.log"),
                        "Cancelled by KeyboardInterrupt before submission",
                    )
                    job_log.record(result)
                    _tally(state, lock, result.status)
                    results.append(result)

        else:
            pool.shutdown(wait=True)

    finally:
        stop_event.set()
        if progress_thread is not None:
            progress_thread.join(timeout=3.0)

    logger.debug("Peak concurrent subjects: %d (limit %d)", state["peak"], max_concurrent)

    report = build_run_report(
        roster, already_complete, results, config, started_at, datetime.now(),
        interrupted=interrupted,
    )
    return report, results


# ============================================================================
# Main
# ============================================================================

def _cli_overrides(args):
    """Nested config overrides from command-line flags (None = not given)."""
    overrides = {
        "study": {
            "input_dir": args.input_dir,
            "output_dir": args.output_dir,
            "preproc_dir": args.preproc_dir,
        },
        "references": {
            "template": args.template,
            "atlas": args.atlas,
            "seed_mask": args.seed_mask,
            "atlas_labels": args.atlas_labels,
        },
        "resources": {
            "max_concurrent": args.max_concurrent,
            "threads_per_job": args.threads_per_job,
            "gpu_devices": args.gpu_devices.split(",") if args.gpu_devices else None,
            "stage_timeout": args.stage_timeout,
        },
        "pipeline": {"mode": args.mode},
        "tractography": {"streamlines": args.streamlines},
        "connectome": {"seed_region_id": args.seed_region_id},
        "qc": {"enabled": True if args.qc else None},
    }

    # Any roster flag replaces the roster section of the config entirely
    if args.subjects or args.subject_list or args.subject_range or args.subject_table:
        overrides["roster"] = {
            "subjects": args.subjects or [],
            "subject_list": args.subject_list,
            "range": list(args.subject_range) if args.subject_range else None,
            "pattern": args.subject_pattern or "{}",
            "table": args.subject_table,
            "column": args.subject_column or "participant_id",
        }
    elif args.subject_pattern or args.subject_column:
        overrides["roster"] = {"pattern": args.subject_pattern, "column": args.subject_column}

    return overrides


def build_arg_parser():
    parser = argparse.ArgumentParser(
        description="Parallel, resumable DWI -> structural connectome orchestrator.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Dry run over a numeric range, 2 parallel subjects
  python run_orchestrator.py --config study.yaml \\
    --subject-range 1001 1035 --subject-pattern mgh_{} -j 2 --dry-run

  # Full run, 4 subjects at a time with 8 threads each, GPUs 0 and 1
  python run_orchestrator.py --config study.yaml \\
    --subject-list subjects.txt -j 4 --threads-per-job 8 --gpu-devices 0,1
        """,
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to the study YAML configuration file (optional if flags supply everything).",
    )

    roster = parser.add_argument_group("roster")
    roster.add_argument("--subjects", nargs="+", default=None, help="Explicit subject IDs.")
    roster.add_argument(
        "--subject-list", default=None,
        help="Path to a plain-text subject list (one ID per line; # = comment).",
    )
    roster.add_argument(
        "--subject-range", nargs=2, type=int, metavar=("START", "STOP"), default=None,
        help="Inclusive numeric range of subject numbers.",
    )
    roster.add_argument(
        "--subject-pattern", default=None,
        help="Pattern turning a range number into an ID, e.g. 'mgh_{}' (default: '{}').",
    )
    roster.add_argument("--subject-table", default=None, help="CSV/TSV participants table.")
    roster.add_argument(
        "--subject-column", default=None,
        help="Column of --subject-table holding subject IDs (default: participant_id).",
    )

    study = parser.add_argument_group("study paths and references")
    study.add_argument("--input-dir", default=None, help="Raw data base directory.")
    study.add_argument("--output-dir", default=None, help="Processed output base directory.")
    study.add_argument(
        "--preproc-dir", default=None,
        help="Where preprocessed DWI lives when running --mode connectome (default: output dir).",
    )
    study.add_argument("--template", default=None, help="MNI template image.")
    study.add_argument("--atlas", default=None, help="Parcellation atlas in template space.")
    study.add_argument("--seed-mask", default=None, help="Seed region mask in template space.")
    study.add_argument("--atlas-labels", default=None, help="Atlas label lookup table (for QC).")

    res = parser.add_argument_group("resources")
    res.add_argument(
        "-j", "--max-concurrent", type=int, default=None,
        help="Number of subjects to process in parallel (default: config or 1).",
    )
    res.add_argument(
        "--threads-per-job", type=int, default=None,
        help="Threads given to each subject's tools (default: config or 1).",
    )
    res.add_argument(
        "--gpu-devices", default=None,
        help="Comma-separated GPU ids assigned round-robin to worker slots, e.g. '0,1'.",
    )
    res.add_argument(
        "--stage-timeout", type=float, default=None,
        help="Kill any single stage running longer than this many seconds.",
    )

    pipe = parser.add_argument_group("pipeline")
    pipe.add_argument(
        "--mode", choices=["full", "preproc", "connectome"], default=None,
        help="Pipeline segment(s) to run (default: config or 'full').",
    )
    pipe.add_argument("--streamlines", type=int, default=None, help="Number of streamlines for tckgen.")
    pipe.add_argument(
        "--seed-region-id", type=int, default=None,
        help="Atlas label given to the seed region merged into the parcellation.",
    )
    pipe.add_argument("--qc", action="store_true", help="Run connectome QC after each subject.")

    run = parser.add_argument_group("run control")
    run.add_argument(
        "--dry-run", action="store_true",
        help="Validate everything and log every command without executing.",
    )
    run.add_argument(
        "--strict", action="store_true",
        help="Exit with code 1 if any subject failed.",
    )
    run.add_argument(
        "--summary-file", default=None,
        help=(
            "Path to the output summary CSV. "
            "Defaults to {output_dir}/logs/run_summary_{YYYYMMDD_HHMMSS}.csv"
        ),
    )
    run.add_argument("--no-progress", action="store_true", help="Do not print the rolling progress line.")
    return parser


def main(argv=None):
    args = build_arg_parser().parse_args(argv)
    logger = setup_logging(ROOT_LOGGER_NAME)
    ts = timestamp()

    # ------------------------------------------------------------------
    # Pre-flight checks
    # ------------------------------------------------------------------
    try:
        config = load_orchestrator_config(args.config, logger, overrides=_cli_overrides(args))
        output_dir = config["study"]["output_dir"]
        check_output_writable(output_dir)

        log_dir = os.path.join(output_dir, "logs")
        setup_logging(ROOT_LOGGER_NAME, log_file=os.path.join(log_dir, f"orchestrator_{ts}.log"))

        references = prepare_reference_files(
            config["references"], os.path.join(output_dir, "reference"), logger
        )
        roster = build_roster(config["roster"], logger)
        pipelines = {s: build_subject_pipeline(config, s, references) for s in roster}

        toolchain = build_toolchain_config(config["toolchain"])
        if args.dry_run:
            logger.info("DRY RUN: skipping toolchain verification.")
        else:
            verify_toolchain(toolchain, pipeline_executables(pipelines.values()), logger)
    except OrchestratorError as e:
        logger.error("Fatal: %s", e)
        return 1

    if args.summary_file:
        summary_file = args.summary_file
        report_file = os.path.splitext(summary_file)[0] + "_report.txt"
    else:
        summary_file = os.path.join(log_dir, f"run_summary_{ts}.csv")
        report_file = os.path.join(log_dir, f"run_report_{ts}.txt")

    res = config["resources"]
    logger.info("Subjects        : %d", len(roster))
    logger.info("Mode            : %s", config["pipeline"]["mode"])
    logger.info("Workers         : %d x %d thread(s)", res["max_concurrent"], res["threads_per_job"])
    if res["gpu_devices"]:
        logger.info("GPU devices     : %s", ", ".join(res["gpu_devices"]))
    logger.info("Output dir      : %s", output_dir)
    logger.info("Summary         : %s", summary_file)
    if args.dry_run:
        logger.info("Run type        : DRY RUN")

    executor = StageExecutor(toolchain, stage_timeout=res["stage_timeout"], dry_run=args.dry_run)

    # ------------------------------------------------------------------
    # Run the cohort
    # ------------------------------------------------------------------
    try:
        report, results = run_cohort(
            roster, config, references=references, executor=executor,
            pipeline_factory=pipelines.__getitem__,
            job_log=JobLog(os.path.join(log_dir, f"joblog_{ts}.tsv")),
            logger=logger,
            show_progress=not args.no_progress and sys.stdout.isatty(),
        )
    except OrchestratorError as e:
        logger.error("Fatal: %s", e)
        return 1

    # ------------------------------------------------------------------
    # Write summary CSV and run report (always, even on interrupt)
    # ------------------------------------------------------------------
    write_summary_csv(report, results, summary_file, logger)
    write_run_report(report, report_file, logger)

    logger.info(
        "Run complete: %d/%d complete (%d already, %d new), %d failed, %d cancelled%s",
        report.n_completed, report.roster_size, len(report.already_complete),
        len(report.succeeded), report.n_failed, len(report.cancelled),
        f", {len(report.planned)} planned" if report.planned else "",
    )
    if report.failed:
        logger.warning("Failed subjects: %s", ", ".join(report.failed_subjects))

    if report.interrupted:
        return 130
    if args.strict and report.failed:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
