#!/usr/bin/env python3

# ============================================================================
# STAGE DEFINITIONS FOR THE DWI -> STRUCTURAL CONNECTOME PIPELINE
#
# A Stage is one external-tool invocation for one subject. Commands are built
# from structured argument lists whose file arguments are references to the
# stage's declared input/output roles (In / Out / OutPrefix) and whose thread
# count is the THREADS placeholder, filled in from the slot budget at run
# time. Declared roles and the command are checked against each other when a
# stage is built, and the ordered stage list is checked for dataflow
# consistency when a subject pipeline is built.
#
# Stage chain (mode "full"; "preproc" and "connectome" run one segment):
#   dwi/              mrconvert -> dwidenoise -> mrdegibbs -> dwifslpreproc
#                     -> dwibiascorrect -> dwi2mask -> dwi2response -> dwi2fod
#   01_registration/  dwiextract -> mrmath -> bet (b0, T1) -> 5ttgen
#                     -> ANTs T1->DWI (rigid), MNI->T1 (SyN)
#                     -> 5TT split / warp / recombine -> atlas + seed warp
#                     -> [seed merged into atlas]
#   02_tractography/  tckgen (ACT) -> tcksift2
#   03_connectome/    tck2connectome
#
# Version: 1.0
# Last updated: 10/18/26
# ============================================================================

import os
from collections import namedtuple
from types import MappingProxyType

from orchestrator_utils import (
    OrchestratorError,
    subject_paths,
    terminal_artifacts,
)


# ============================================================================
# Section A: Command Builder
# ============================================================================

In = namedtuple("In", ["role"])
Out = namedtuple("Out", ["role"])
# Output prefix for tools that derive several file names from one argument
# (e.g. ANTs "-o MNI_to_T1_" -> MNI_to_T1_0GenericAffine.mat, MNI_to_T1_1Warp.nii.gz)
OutPrefix = namedtuple("OutPrefix", ["path"])


class _ThreadBudget(object):
    """Placeholder for the per-job thread budget in a command."""

    def __repr__(self):
        return "THREADS"


THREADS = _ThreadBudget()


class Stage(namedtuple("Stage", [
    "index", "name", "argv", "inputs", "outputs", "workdir", "threads", "gpu",
])):
    """
    One immutable unit of work for one subject.

    index is the 1-based position in the subject pipeline (None until the
    stage is placed by build_pipeline). threads=None means the stage uses the
    full per-job budget; an int caps it (single-threaded tools use 1). gpu
    marks stages that may be bound to the worker slot's GPU.
    """
    __slots__ = ()

    @property
    def executable(self):
        return self.argv[0]

    @property
    def label(self):
        if self.index is None:
            return self.name
        return f"{self.index:02d}_{self.name}"


SubjectPipeline = namedtuple("SubjectPipeline", [
    "sub_id", "stages", "raw_inputs", "shared_inputs", "terminal_artifacts", "paths",
])


def _stem(path):
    if path.endswith(".nii.gz"):
        return path[:-len(".nii.gz")]
    return os.path.splitext(path)[0]


def make_stage(name, argv, inputs, outputs, workdir, threads=None, gpu=False):
    """
    Build a Stage, checking that the command and declared roles agree.

    Every In/Out token must name a declared role, every declared input must be
    referenced by the command, and every declared output must either be
    referenced directly or be derived from a referenced output or OutPrefix
    (same stem, e.g. bet's "<out>_mask.nii.gz").

    Raises
    ------
    OrchestratorError
        If the stage definition is inconsistent.
    """
    if not argv or not isinstance(argv[0], str):
        raise OrchestratorError(f"Stage '{name}': the first argument must be the executable name.")

    inputs = {role: os.path.abspath(p) for role, p in inputs.items()}
    outputs = {role: os.path.abspath(p) for role, p in outputs.items()}

    shared_roles = set(inputs) & set(outputs)
    if shared_roles:
        raise OrchestratorError(f"Stage '{name}': roles declared as both input and output: {sorted(shared_roles)}")

    tokens = []
    used_in, used_out, prefixes = set(), set(), []
    for token in argv:
        if token is THREADS:
            pass
        elif isinstance(token, In):
            if token.role not in inputs:
                raise OrchestratorError(f"Stage '{name}': command references undeclared input '{token.role}'.")
            used_in.add(token.role)
        elif isinstance(token, Out):
            if token.role not in outputs:
                raise OrchestratorError(f"Stage '{name}': command references undeclared output '{token.role}'.")
            used_out.add(token.role)
        elif isinstance(token, OutPrefix):
            token = OutPrefix(os.path.join(os.path.abspath(os.path.dirname(token.path)),
                                           os.path.basename(token.path)))
            prefixes.append(token.path)
        elif not isinstance(token, str):
            raise OrchestratorError(f"Stage '{name}': unsupported command argument {token!r}.")
        tokens.append(token)

    unused = sorted(set(inputs) - used_in)
    if unused:
        raise OrchestratorError(f"Stage '{name}': declared input(s) not used by the command: {unused}")

    roots = [_stem(outputs[r]) for r in used_out] + prefixes
    for role, path in outputs.items():
        if role not in used_out and not any(path.startswith(root) for root in roots):
            raise OrchestratorError(
                f"Stage '{name}': declared output '{role}' ({path}) is not produced by the command."
            )

    if threads is not None and (not isinstance(threads, int) or threads < 1):
        raise OrchestratorError(f"Stage '{name}': threads must be a positive integer or None.")

    return Stage(
        index=None,
        name=name,
        argv=tuple(tokens),
        inputs=MappingProxyType(inputs),
        outputs=MappingProxyType(outputs),
        workdir=os.path.abspath(workdir),
        threads=threads,
        gpu=bool(gpu),
    )


def stage_threads(stage, budget):
    """Threads a stage actually receives from a job's budget."""
    if stage.threads is None:
        return budget
    return min(stage.threads, budget)


def render_command(stage, threads):
    """Resolve a stage's argument tokens into the argv list passed to subprocess."""
    cmd = []
    for token in stage.argv:
        if token is THREADS:
            cmd.append(str(threads))
        elif isinstance(token, In):
            cmd.append(stage.inputs[token.role])
        elif isinstance(token, Out):
            cmd.append(stage.outputs[token.role])
        elif isinstance(token, OutPrefix):
            cmd.append(token.path)
        else:
            cmd.append(token)
    return cmd


# ============================================================================
# Section B: Pipeline Assembly
# ============================================================================

def build_pipeline(sub_id, stages, raw_inputs, shared_inputs, artifacts, paths=None):
    """
    Order stages into a SubjectPipeline and check its dataflow.

    Checks:
    1. Stage names are unique.
    2. Every input of stage i is a subject raw input, a shared reference
       input, or an output of a stage before i.
    3. No stage writes a path an earlier stage wrote, or a pipeline input.
    4. Every terminal artifact is produced by some stage.

    Parameters
    ----------
    sub_id : str
    stages : list of Stage
    raw_inputs : dict
        Role -> path of the subject's own inputs (checked before stage 1 runs).
    shared_inputs : dict
        Role -> path of read-only reference inputs shared across subjects.
    artifacts : list of str
        Terminal artifact paths.
    paths : dict or None
        Subject directory layout, kept for logging and QC.

    Returns
    -------
    SubjectPipeline
    """
    external = {os.path.abspath(p) for p in raw_inputs.values()}
    external |= {os.path.abspath(p) for p in shared_inputs.values()}
    produced = {}
    names = set()
    placed = []

    for i, stage in enumerate(stages, start=1):
        if stage.name in names:
            raise OrchestratorError(f"sub {sub_id}: duplicate stage name '{stage.name}'.")
        names.add(stage.name)

        missing = sorted(p for p in stage.inputs.values() if p not in external and p not in produced)
        if missing:
            raise OrchestratorError(
                f"sub {sub_id}: stage '{stage.name}' reads {missing}, which is neither a "
                f"pipeline input nor an output of an earlier stage."
            )

        for path in stage.outputs.values():
            if path in produced:
                raise OrchestratorError(
                    f"sub {sub_id}: stage '{stage.name}' would overwrite {path}, "
                    f"already written by stage '{produced[path]}'."
                )
            if path in external:
                raise OrchestratorError(
                    f"sub {sub_id}: stage '{stage.name}' would overwrite pipeline input {path}."
                )
            produced[path] = stage.name

        placed.append(stage._replace(index=i))

    artifacts = [os.path.abspath(p) for p in artifacts]
    orphaned = [p for p in artifacts if p not in produced]
    if orphaned:
        raise OrchestratorError(f"sub {sub_id}: terminal artifact(s) not produced by any stage: {orphaned}")

    return SubjectPipeline(
        sub_id=sub_id,
        stages=tuple(placed),
        raw_inputs=MappingProxyType(dict(raw_inputs)),
        shared_inputs=MappingProxyType(dict(shared_inputs)),
        terminal_artifacts=tuple(artifacts),
        paths=MappingProxyType(dict(paths or {})),
    )


def pipeline_executables(pipelines):
    """Every executable any of the given pipelines will launch."""
    return {stage.executable for p in pipelines for stage in p.stages}


# ============================================================================
# Section C: DWI Preprocessing and FOD Modeling
# ============================================================================

def preproc_stages(config, paths, raw):
    """Raw NIfTI + FSL gradients -> preprocessed DWI and multi-tissue FODs."""
    pre = config["preproc"]
    d = paths["dwi"]

    def p(name):
        return os.path.join(d, name)

    if pre["rpe"] == "none":
        rpe_args = ["-rpe_none", "-pe_dir", pre["pe_dir"]]
    else:
        rpe_args = ["-rpe_header"]

    return [
        make_stage(
            "convert",
            ["mrconvert", In("dwi"), Out("mif"), "-fslgrad", In("bvecs"), In("bvals"),
             "-force", "-nthreads", THREADS],
            inputs={"dwi": raw["dwi"], "bvecs": raw["bvecs"], "bvals": raw["bvals"]},
            outputs={"mif": p("dwi_initial.mif")}, workdir=d,
        ),
        make_stage(
            "denoise",
            ["dwidenoise", In("dwi"), Out("denoised"), "-force", "-nthreads", THREADS],
            inputs={"dwi": p("dwi_initial.mif")},
            outputs={"denoised": p("dwi_den.mif")}, workdir=d,
        ),
        make_stage(
            "degibbs",
            ["mrdegibbs", In("dwi"), Out("unringed"), "-axes", pre["degibbs_axes"],
             "-force", "-nthreads", THREADS],
            inputs={"dwi": p("dwi_den.mif")},
            outputs={"unringed": p("dwi_den_unr.mif")}, workdir=d,
        ),
        make_stage(
            "fslpreproc",
            ["dwifslpreproc", In("dwi"), Out("corrected")] + rpe_args +
            ["-eddy_options", pre["eddy_options"], "-force", "-nthreads", THREADS],
            inputs={"dwi": p("dwi_den_unr.mif")},
            outputs={"corrected": p("dwi_preproc.mif")}, workdir=d, gpu=True,
        ),
        make_stage(
            "biascorrect",
            ["dwibiascorrect", "ants", In("dwi"), Out("unbiased"), "-bias", Out("bias"),
             "-force", "-nthreads", THREADS],
            inputs={"dwi": p("dwi_preproc.mif")},
            outputs={"unbiased": p("dwi_unbiased.mif"), "bias": p("bias.mif")}, workdir=d,
        ),
        make_stage(
            "mask",
            ["dwi2mask", In("dwi"), Out("mask"), "-force", "-nthreads", THREADS],
            inputs={"dwi": p("dwi_unbiased.mif")},
            outputs={"mask": p("mask.mif")}, workdir=d,
        ),
        make_stage(
            "response",
            ["dwi2response", "dhollander", In("dwi"), Out("wm"), Out("gm"), Out("csf"),
             "-force", "-nthreads", THREADS],
            inputs={"dwi": p("dwi_unbiased.mif")},
            outputs={"wm": p("wm_response.txt"), "gm": p("gm_response.txt"),
                     "csf": p("csf_response.txt")},
            workdir=d,
        ),
        make_stage(
            "fod",
            ["dwi2fod", "msmt_csd", In("dwi"),
             In("wm_response"), Out("wmfod"),
             In("gm_response"), Out("gmfod"),
             In("csf_response"), Out("csffod"),
             "-mask", In("mask"), "-force", "-nthreads", THREADS],
            inputs={"dwi": p("dwi_unbiased.mif"), "mask": p("mask.mif"),
                    "wm_response": p("wm_response.txt"), "gm_response": p("gm_response.txt"),
                    "csf_response": p("csf_response.txt")},
            outputs={"wmfod": p("wmfod.mif"), "gmfod": p("gmfod.mif"), "csffod": p("csffod.mif")},
            workdir=d,
        ),
    ]


# ============================================================================
# Section D: Registration, Tractography and Connectome
# ============================================================================

N_5TT_TISSUES = 5


def streamline_label(n):
    """Compact streamline count for file names (1000000 -> '1M')."""
    if n % 1000000 == 0:
        return f"{n // 1000000}M"
    if n % 1000 == 0:
        return f"{n // 1000}K"
    return str(n)


def connectome_stages(config, paths, dwi_unbiased, wmfod, t1, references):
    """
    Native-space registration, ACT tractography and connectome construction.

    The MNI atlas and seed mask are brought into DWI space by chaining the
    MNI->T1 (SyN) and T1->DWI (rigid) transforms. When
    connectome.seed_region_id is set, the warped seed is written into the
    warped atlas under that label and the merged image becomes the node image.
    """
    reg = paths["registration"]
    tract = paths["tractography"]
    conn = paths["connectome"]
    reg_cfg = config["registration"]
    tract_cfg = config["tractography"]
    conn_cfg = config["connectome"]

    def r(name):
        return os.path.join(reg, name)

    t1_to_dwi = r("T1_to_DWI_")
    mni_to_t1 = r("MNI_to_T1_")
    t1_to_dwi_affine = t1_to_dwi + "0GenericAffine.mat"
    mni_affine = mni_to_t1 + "0GenericAffine.mat"
    mni_warp = mni_to_t1 + "1Warp.nii.gz"

    stages = [
        make_stage(
            "extract_b0",
            ["dwiextract", In("dwi"), Out("b0s"), "-bzero", "-force", "-nthreads", THREADS],
            inputs={"dwi": dwi_unbiased}, outputs={"b0s": r("b0s.mif")}, workdir=reg,
        ),
        make_stage(
            "mean_b0",
            ["mrmath", In("b0s"), "mean", Out("mean"), "-axis", "3", "-force", "-nthreads", THREADS],
            inputs={"b0s": r("b0s.mif")}, outputs={"mean": r("b0_mean.nii.gz")}, workdir=reg,
        ),
        make_stage(
            "bet_b0",
            ["bet", In("b0"), Out("brain"), "-f", str(reg_cfg["bet_b0_frac"]), "-g", "0", "-m"],
            inputs={"b0": r("b0_mean.nii.gz")},
            outputs={"brain": r("b0_mean_brain.nii.gz"), "mask": r("b0_mean_brain_mask.nii.gz")},
            workdir=reg, threads=1,
        ),
        make_stage(
            "bet_t1",
            ["bet", In("t1"), Out("brain"), "-f", str(reg_cfg["bet_t1_frac"]), "-g", "0", "-B"],
            inputs={"t1": t1}, outputs={"brain": r("T1_brain.nii.gz")},
            workdir=reg, threads=1,
        ),
        make_stage(
            "5ttgen",
            ["5ttgen", "fsl", In("t1_brain"), Out("5tt"), "-premasked", "-force", "-nthreads", THREADS],
            inputs={"t1_brain": r("T1_brain.nii.gz")}, outputs={"5tt": r("5tt_native.mif")},
            workdir=reg,
        ),
        make_stage(
            "reg_t1_to_dwi",
            ["antsRegistrationSyNQuick.sh", "-d", "3", "-f", In("fixed"), "-m", In("moving"),
             "-o", OutPrefix(t1_to_dwi), "-t", "r", "-n", THREADS],
            inputs={"fixed": r("b0_mean_brain.nii.gz"), "moving": r("T1_brain.nii.gz")},
            outputs={"affine": t1_to_dwi_affine}, workdir=reg,
        ),
        make_stage(
            "reg_mni_to_t1",
            ["antsRegistrationSyN.sh", "-d", "3", "-f", In("fixed"), "-m", In("moving"),
             "-o", OutPrefix(mni_to_t1), "-t", "s", "-n", THREADS],
            inputs={"fixed": r("T1_brain.nii.gz"), "moving": references["template"]},
            outputs={"affine": mni_affine, "warp": mni_warp}, workdir=reg,
        ),
    ]

    # 5TT volumes are warped one tissue at a time, then recombined
    coreg_tissues = []
    for k in range(N_5TT_TISSUES):
        tissue = r(f"tissue{k}.nii.gz")
        coreg = r(f"tissue{k}_coreg.nii.gz")
        stages.append(make_stage(
            f"split_5tt_{k}",
            ["mrconvert", In("5tt"), "-coord", "3", str(k), Out("tissue"), "-force", "-nthreads", THREADS],
            inputs={"5tt": r("5tt_native.mif")}, outputs={"tissue": tissue}, workdir=reg,
        ))
        stages.append(make_stage(
            f"warp_5tt_{k}",
            ["antsApplyTransforms", "-d", "3", "-i", In("tissue"), "-r", In("reference"),
             "-o", Out("coreg"), "-t", In("affine"), "-n", "Linear"],
            inputs={"tissue": tissue, "reference": r("b0_mean_brain.nii.gz"), "affine": t1_to_dwi_affine},
            outputs={"coreg": coreg}, workdir=reg,
        ))
        coreg_tissues.append(coreg)

    tissue_roles = [f"tissue{k}" for k in range(N_5TT_TISSUES)]
    stages.append(make_stage(
        "combine_5tt",
        ["mrcat"] + [In(role) for role in tissue_roles] +
        [Out("5tt"), "-axis", "3", "-force", "-nthreads", THREADS],
        inputs=dict(zip(tissue_roles, coreg_tissues)), outputs={"5tt": r("5tt_coreg.mif")},
        workdir=reg,
    ))

    for name, role, source, target in (
        ("warp_atlas", "atlas", references["atlas"], r("atlas_coreg.nii.gz")),
        ("warp_seed", "seed", references["seed_mask"], r("seed_coreg.nii.gz")),
    ):
        stages.append(make_stage(
            name,
            ["antsApplyTransforms", "-d", "3", "-i", In(role), "-r", In("reference"),
             "-o", Out("coreg"),
             "-t", In("t1_to_dwi"), "-t", In("mni_warp"), "-t", In("mni_affine"),
             "-n", "NearestNeighbor"],
            inputs={role: source, "reference": r("b0_mean.nii.gz"), "t1_to_dwi": t1_to_dwi_affine,
                    "mni_warp": mni_warp, "mni_affine": mni_affine},
            outputs={"coreg": target}, workdir=reg,
        ))

    nodes = r("atlas_coreg.nii.gz")
    seed_id = conn_cfg["seed_region_id"]
    if seed_id is not None:
        nodes = r("atlas_seed_coreg.nii.gz")
        stages.append(make_stage(
            "merge_seed",
            ["mrcalc", In("seed"), "0", "-gt", str(seed_id), In("atlas"), "-if", Out("nodes"),
             "-datatype", "uint32", "-force", "-nthreads", THREADS],
            inputs={"seed": r("seed_coreg.nii.gz"), "atlas": r("atlas_coreg.nii.gz")},
            outputs={"nodes": nodes}, workdir=reg,
        ))

    tracks = os.path.join(tract, f"tracks_{streamline_label(tract_cfg['streamlines'])}.tck")
    weights = os.path.join(tract, "sift2_weights.txt")

    tckgen_args = [
        "tckgen", In("fod"), Out("tracks"),
        "-act", In("5tt"), "-seed_image", In("seed"), "-mask", In("mask"),
        "-select", str(tract_cfg["streamlines"]),
    ]
    if tract_cfg["backtrack"]:
        tckgen_args.append("-backtrack")
    tckgen_args += ["-cutoff", str(tract_cfg["cutoff"]), "-force", "-nthreads", THREADS]

    stages.append(make_stage(
        "tckgen", tckgen_args,
        inputs={"fod": wmfod, "5tt": r("5tt_coreg.mif"), "seed": r("seed_coreg.nii.gz"),
                "mask": r("b0_mean_brain_mask.nii.gz")},
        outputs={"tracks": tracks}, workdir=tract,
    ))
    stages.append(make_stage(
        "tcksift2",
        ["tcksift2", In("tracks"), In("fod"), Out("weights"), "-act", In("5tt"),
         "-force", "-nthreads", THREADS],
        inputs={"tracks": tracks, "fod": wmfod, "5tt": r("5tt_coreg.mif")},
        outputs={"weights": weights}, workdir=tract,
    ))

    connectome_args = [
        "tck2connectome", In("tracks"), In("nodes"), Out("matrix"),
        "-tck_weights_in", In("weights"),
    ]
    if conn_cfg["symmetric"]:
        connectome_args.append("-symmetric")
    if conn_cfg["zero_diagonal"]:
        connectome_args.append("-zero_diagonal")
    if conn_cfg["scale_invnodevol"]:
        connectome_args.append("-scale_invnodevol")
    connectome_args += ["-out_assignment", Out("assignments"), "-force", "-nthreads", THREADS]

    stages.append(make_stage(
        "tck2connectome", connectome_args,
        inputs={"tracks": tracks, "nodes": nodes, "weights": weights},
        outputs={"matrix": os.path.join(conn, "connectivity_matrix.csv"),
                 "assignments": os.path.join(conn, "assignments.csv")},
        workdir=conn,
    ))
    return stages


# ============================================================================
# Section E: Subject Pipeline Factory
# ============================================================================

def subject_raw_inputs(config, sub_id):
    """Resolve the study.inputs patterns for one subject."""
    base = config["study"]["input_dir"]
    return {
        role: os.path.join(base, pattern.replace("{subject}", sub_id))
        for role, pattern in config["study"]["inputs"].items()
    }


def build_subject_pipeline(config, sub_id, references):
    """
    Build the validated stage chain for one subject.

    Parameters
    ----------
    config : dict
        Validated study config.
    sub_id : str
    references : dict
        Prepared reference paths (see prepare_reference_files).

    Returns
    -------
    SubjectPipeline
    """
    mode = config["pipeline"]["mode"]
    paths = subject_paths(config, sub_id)
    available = subject_raw_inputs(config, sub_id)

    dwi_unbiased = os.path.join(paths["dwi"], "dwi_unbiased.mif")
    wmfod = os.path.join(paths["dwi"], "wmfod.mif")

    raw = {}
    shared = {}
    stages = []

    if mode in ("full", "preproc"):
        raw.update({role: available[role] for role in ("dwi", "bvecs", "bvals")})
        stages += preproc_stages(config, paths, raw)

    if mode in ("full", "connectome"):
        raw["t1"] = available["t1"]
        if mode == "connectome":
            # preprocessing ran separately; its outputs are inputs here
            raw["dwi_unbiased"] = dwi_unbiased
            raw["wmfod"] = wmfod
        shared = {role: references[role] for role in ("template", "atlas", "seed_mask")}
        stages += connectome_stages(config, paths, dwi_unbiased, wmfod, raw["t1"], references)

    return build_pipeline(
        sub_id, stages, raw_inputs=raw, shared_inputs=shared,
        artifacts=terminal_artifacts(config, sub_id), paths=paths,
    )
