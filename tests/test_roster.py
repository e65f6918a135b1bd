"""Tests for roster assembly from lists, ranges and participant tables."""

import pytest

from orchestrator_utils import (
    OrchestratorError,
    build_roster,
    parse_subject_list,
    subjects_from_range,
    subjects_from_table,
    validate_subject_id,
)


def _roster_cfg(**kwargs):
    cfg = {"subjects": [], "subject_list": None, "range": None, "pattern": "{}",
           "table": None, "column": "participant_id"}
    cfg.update(kwargs)
    return cfg


class TestSources:

    def test_range_with_pattern(self):
        assert subjects_from_range(1001, 1003, "mgh_{}") == ["mgh_1001", "mgh_1002", "mgh_1003"]

    def test_single_element_range(self):
        assert subjects_from_range(7, 7) == ["7"]

    @pytest.mark.parametrize("start, stop, pattern", [
        (10, 5, "{}"),
        (1, 3, "sub"),
        ("1", 3, "{}"),
    ])
    def test_invalid_range(self, start, stop, pattern):
        with pytest.raises(OrchestratorError):
            subjects_from_range(start, stop, pattern)

    def test_subject_list_file(self, tmp_path, test_logger):
        path = tmp_path / "subjects.txt"
        path.write_text("# cohort A\nmgh_1001\n\n  mgh_1002  \n# mgh_1003\nmgh_1001\n")
        assert parse_subject_list(str(path), test_logger) == ["mgh_1001", "mgh_1002", "mgh_1001"]

    def test_missing_subject_list(self, tmp_path, test_logger):
        with pytest.raises(OrchestratorError, match="not found"):
            parse_subject_list(str(tmp_path / "missing.txt"), test_logger)

    def test_participants_csv(self, tmp_path):
        path = tmp_path / "participants.csv"
        path.write_text("participant_id,age\nmgh_1001,30\nmgh_1002,41\n,50\n")
        assert subjects_from_table(str(path), "participant_id") == ["mgh_1001", "mgh_1002"]

    def test_participants_tsv_keeps_leading_zeros(self, tmp_path):
        path = tmp_path / "participants.tsv"
        path.write_text("subject\tgroup\n0012\tA\n0013\tB\n")
        assert subjects_from_table(str(path), "subject") == ["0012", "0013"]

    def test_participants_missing_column(self, tmp_path):
        path = tmp_path / "participants.csv"
        path.write_text("id,age\nmgh_1001,30\n")
        with pytest.raises(OrchestratorError, match="Column 'participant_id'"):
            subjects_from_table(str(path), "participant_id")


class TestBuildRoster:

    def test_sources_combined_in_order(self, tmp_path, test_logger):
        path = tmp_path / "subjects.txt"
        path.write_text("mgh_2001\n")
        roster = build_roster(
            _roster_cfg(subjects=["mgh_0001"], subject_list=str(path), range=[1001, 1002],
                        pattern="mgh_{}"),
            test_logger,
        )
        assert roster == ["mgh_0001", "mgh_2001", "mgh_1001", "mgh_1002"]

    def test_duplicates_warned_and_skipped(self, test_logger, caplog):
        roster = build_roster(_roster_cfg(subjects=["S1", "S2", "S1"]), test_logger)
        assert roster == ["S1", "S2"]
        assert "Duplicate subject ID 'S1'" in caplog.text

    def test_empty_roster(self, test_logger):
        with pytest.raises(OrchestratorError, match="empty"):
            build_roster(_roster_cfg(), test_logger)

    def test_bad_range_shape(self, test_logger):
        with pytest.raises(OrchestratorError, match="roster.range"):
            build_roster(_roster_cfg(range=[1, 2, 3]), test_logger)

    @pytest.mark.parametrize("bad_id", ["../etc", "a/b", ".hidden", "sub 01", "-x"])
    def test_path_like_ids_rejected(self, bad_id, test_logger):
        with pytest.raises(OrchestratorError, match="Invalid subject ID"):
            build_roster(_roster_cfg(subjects=[bad_id]), test_logger)

    @pytest.mark.parametrize("good_id", ["mgh_1001", "sub-01", "1001", "S1.v2"])
    def test_valid_ids(self, good_id):
        assert validate_subject_id(good_id) == good_id
