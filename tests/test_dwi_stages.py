"""Tests for the stage command builder, pipeline checks and the DWI stage chain."""

import os

import pytest

from orchestrator_utils import OrchestratorError
from dwi_stages import (
    In,
    Out,
    OutPrefix,
    THREADS,
    make_stage,
    render_command,
    stage_threads,
    build_pipeline,
    build_subject_pipeline,
    pipeline_executables,
    streamline_label,
)


# -----------------------------
# make_stage / render_command
# -----------------------------

class TestMakeStage:

    def test_render_resolves_roles_and_threads(self, tmp_path):
        stage = make_stage(
            "denoise",
            ["dwidenoise", In("dwi"), Out("den"), "-nthreads", THREADS],
            inputs={"dwi": str(tmp_path / "a.mif")},
            outputs={"den": str(tmp_path / "b.mif")},
            workdir=str(tmp_path),
        )
        assert stage.index is None
        assert stage.executable == "dwidenoise"
        assert render_command(stage, 6) == [
            "dwidenoise", str(tmp_path / "a.mif"), str(tmp_path / "b.mif"), "-nthreads", "6",
        ]

    def test_undeclared_input_role(self, tmp_path):
        with pytest.raises(OrchestratorError, match="undeclared input 'mask'"):
            make_stage("s", ["tool", In("mask")], {}, {}, str(tmp_path))

    def test_undeclared_output_role(self, tmp_path):
        with pytest.raises(OrchestratorError, match="undeclared output 'out'"):
            make_stage("s", ["tool", Out("out")], {}, {}, str(tmp_path))

    def test_unused_input(self, tmp_path):
        with pytest.raises(OrchestratorError, match="not used by the command"):
            make_stage("s", ["tool", In("a")], {"a": "/x/a", "b": "/x/b"}, {}, str(tmp_path))

    def test_output_not_produced(self, tmp_path):
        with pytest.raises(OrchestratorError, match="'extra'"):
            make_stage(
                "s", ["tool", Out("out")], {},
                {"out": str(tmp_path / "out.nii.gz"), "extra": str(tmp_path / "other.nii.gz")},
                str(tmp_path),
            )

    def test_derived_output_from_stem(self, tmp_path):
        # bet writes <out>_mask.nii.gz next to <out>.nii.gz
        stage = make_stage(
            "bet", ["bet", In("img"), Out("brain"), "-m"],
            {"img": str(tmp_path / "b0.nii.gz")},
            {"brain": str(tmp_path / "b0_brain.nii.gz"), "mask": str(tmp_path / "b0_brain_mask.nii.gz")},
            str(tmp_path), threads=1,
        )
        assert set(stage.outputs) == {"brain", "mask"}

    def test_outputs_from_prefix(self, tmp_path):
        prefix = str(tmp_path / "MNI_to_T1_")
        stage = make_stage(
            "reg", ["antsRegistrationSyN.sh", "-m", In("moving"), "-o", OutPrefix(prefix)],
            {"moving": str(tmp_path / "mni.nii.gz")},
            {"affine": prefix + "0GenericAffine.mat", "warp": prefix + "1Warp.nii.gz"},
            str(tmp_path),
        )
        assert render_command(stage, 1)[-1] == prefix

    def test_role_both_input_and_output(self, tmp_path):
        with pytest.raises(OrchestratorError, match="both input and output"):
            make_stage("s", ["tool", In("x"), Out("x")], {"x": "/a"}, {"x": "/b"}, str(tmp_path))

    @pytest.mark.parametrize("threads", [0, -1, 1.5])
    def test_invalid_thread_cap(self, tmp_path, threads):
        with pytest.raises(OrchestratorError, match="threads"):
            make_stage("s", ["tool"], {}, {}, str(tmp_path), threads=threads)

    def test_stage_threads_capped_by_budget(self, tmp_path):
        full = make_stage("a", ["tool"], {}, {}, str(tmp_path))
        single = make_stage("b", ["tool"], {}, {}, str(tmp_path), threads=1)
        assert stage_threads(full, 8) == 8
        assert stage_threads(single, 8) == 1
        assert stage_threads(make_stage("c", ["tool"], {}, {}, str(tmp_path), threads=16), 4) == 4


# -----------------------------
# build_pipeline checks
# -----------------------------

class TestBuildPipeline:

    def _copy(self, tmp_path, name, src, dst):
        return make_stage(name, ["cp", In("src"), Out("dst")],
                          {"src": str(tmp_path / src)}, {"dst": str(tmp_path / dst)}, str(tmp_path))

    def test_indices_are_one_based(self, tmp_path):
        stages = [self._copy(tmp_path, "one", "raw", "a"), self._copy(tmp_path, "two", "a", "b")]
        pipeline = build_pipeline("S1", stages, {"raw": str(tmp_path / "raw")}, {}, [str(tmp_path / "b")])
        assert [s.index for s in pipeline.stages] == [1, 2]
        assert pipeline.stages[1].label == "02_two"

    def test_input_from_later_stage_rejected(self, tmp_path):
        stages = [self._copy(tmp_path, "two", "a", "b"), self._copy(tmp_path, "one", "raw", "a")]
        with pytest.raises(OrchestratorError, match="neither a pipeline input"):
            build_pipeline("S1", stages, {"raw": str(tmp_path / "raw")}, {}, [str(tmp_path / "b")])

    def test_overwriting_earlier_output_rejected(self, tmp_path):
        stages = [self._copy(tmp_path, "one", "raw", "a"), self._copy(tmp_path, "again", "raw", "a")]
        with pytest.raises(OrchestratorError, match="already written by stage 'one'"):
            build_pipeline("S1", stages, {"raw": str(tmp_path / "raw")}, {}, [str(tmp_path / "a")])

    def test_overwriting_pipeline_input_rejected(self, tmp_path):
        stages = [self._copy(tmp_path, "one", "a", "raw")]
        with pytest.raises(OrchestratorError, match="overwrite pipeline input"):
            build_pipeline("S1", stages, {"raw": str(tmp_path / "raw"), "a": str(tmp_path / "a")},
                           {}, [str(tmp_path / "raw")])

    def test_orphan_terminal_artifact_rejected(self, tmp_path):
        stages = [self._copy(tmp_path, "one", "raw", "a")]
        with pytest.raises(OrchestratorError, match="not produced by any stage"):
            build_pipeline("S1", stages, {"raw": str(tmp_path / "raw")}, {}, [str(tmp_path / "zzz")])

    def test_duplicate_stage_names_rejected(self, tmp_path):
        stages = [self._copy(tmp_path, "one", "raw", "a"), self._copy(tmp_path, "one", "a", "b")]
        with pytest.raises(OrchestratorError, match="duplicate stage name"):
            build_pipeline("S1", stages, {"raw": str(tmp_path / "raw")}, {}, [str(tmp_path / "b")])


# -----------------------------
# DWI stage chain
# -----------------------------

def _names(pipeline):
    return [s.name for s in pipeline.stages]


class TestSubjectPipeline:

    def test_full_chain(self, study_config):
        pipeline = build_subject_pipeline(study_config, "mgh_1001", study_config["references"])
        names = _names(pipeline)

        assert names[:8] == ["convert", "denoise", "degibbs", "fslpreproc", "biascorrect",
                             "mask", "response", "fod"]
        assert names[-3:] == ["tckgen", "tcksift2", "tck2connectome"]
        assert "merge_seed" not in names
        assert len(names) == 31
        assert [f"warp_5tt_{k}" for k in range(5)] == [n for n in names if n.startswith("warp_5tt_")]

        out = study_config["study"]["output_dir"]
        assert pipeline.terminal_artifacts == (
            os.path.join(out, "mgh_1001", "03_connectome", "connectivity_matrix.csv"),
            os.path.join(out, "mgh_1001", "03_connectome", "assignments.csv"),
        )
        assert set(pipeline.raw_inputs) == {"dwi", "bvecs", "bvals", "t1"}
        assert pipeline.raw_inputs["dwi"] == os.path.join(
            study_config["study"]["input_dir"], "mgh_1001", "diff", "raw", "mri", "diff.nii.gz"
        )

    def test_only_eddy_is_gpu_eligible(self, study_config):
        pipeline = build_subject_pipeline(study_config, "S1", study_config["references"])
        assert [s.name for s in pipeline.stages if s.gpu] == ["fslpreproc"]

    def test_single_threaded_tools(self, study_config):
        pipeline = build_subject_pipeline(study_config, "S1", study_config["references"])
        capped = {s.name: s.threads for s in pipeline.stages if s.threads is not None}
        assert capped == {"bet_b0": 1, "bet_t1": 1}

    def test_seed_region_merged_into_atlas(self, study_config):
        study_config["connectome"]["seed_region_id"] = 281
        pipeline = build_subject_pipeline(study_config, "S1", study_config["references"])
        by_name = {s.name: s for s in pipeline.stages}

        merge = by_name["merge_seed"]
        assert "281" in render_command(merge, 1)
        assert by_name["tck2connectome"].inputs["nodes"] == merge.outputs["nodes"]
        assert _names(pipeline).index("merge_seed") < _names(pipeline).index("tck2connectome")

    def test_tracks_named_by_streamline_count(self, study_config):
        study_config["tractography"]["streamlines"] = 5000000
        pipeline = build_subject_pipeline(study_config, "S1", study_config["references"])
        tckgen = [s for s in pipeline.stages if s.name == "tckgen"][0]
        assert os.path.basename(tckgen.outputs["tracks"]) == "tracks_5M.tck"
        cmd = render_command(tckgen, 4)
        assert cmd[cmd.index("-select") + 1] == "5000000"
        assert "-backtrack" in cmd

    def test_preproc_mode(self, study_config):
        study_config["pipeline"]["mode"] = "preproc"
        pipeline = build_subject_pipeline(study_config, "S1", {})
        assert len(pipeline.stages) == 8
        assert pipeline.terminal_artifacts[0].endswith(os.path.join("S1", "dwi", "wmfod.mif"))
        assert "t1" not in pipeline.raw_inputs

    def test_connectome_mode_reads_preprocessed_dwi(self, study_config, tmp_path):
        study_config["pipeline"]["mode"] = "connectome"
        study_config["study"]["preproc_dir"] = str(tmp_path / "preproc")
        pipeline = build_subject_pipeline(study_config, "S1", study_config["references"])

        assert _names(pipeline)[0] == "extract_b0"
        assert "convert" not in _names(pipeline)
        assert pipeline.raw_inputs["wmfod"] == str(tmp_path / "preproc" / "S1" / "dwi" / "wmfod.mif")
        assert pipeline.raw_inputs["dwi_unbiased"].endswith("dwi_unbiased.mif")

    def test_rpe_header(self, study_config):
        study_config["preproc"]["rpe"] = "header"
        pipeline = build_subject_pipeline(study_config, "S1", study_config["references"])
        cmd = render_command(pipeline.stages[3], 1)
        assert "-rpe_header" in cmd
        assert "-pe_dir" not in cmd

    def test_executables(self, study_config):
        pipeline = build_subject_pipeline(study_config, "S1", study_config["references"])
        exes = pipeline_executables([pipeline])
        assert {"mrconvert", "dwifslpreproc", "5ttgen", "antsRegistrationSyN.sh",
                "antsRegistrationSyNQuick.sh", "antsApplyTransforms", "tck2connectome"} <= exes


@pytest.mark.parametrize("n, label", [
    (1000000, "1M"), (10000000, "10M"), (250000, "250K"), (1500, "1500"),
])
def test_streamline_label(n, label):
    assert streamline_label(n) == label
