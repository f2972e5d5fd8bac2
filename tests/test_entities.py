import pytest

from core.entities import Cluster, ClusterStage, RecordState, check_transition
from core.errors import IllegalTransitionError

T = 1_700_000_000.0


def _cluster(**fields) -> Cluster:
    base = {
        "id": 1,
        "centroid_text": "",
        "member_count": 3,
        "unique_author_count": 3,
        "unique_source_count": 1,
        "created_at": T,
        "updated_at": T,
    }
    return Cluster(**{**base, **fields})


def test_forward_transitions_allowed():
    check_transition(RecordState.EXTRACTED, RecordState.TAGGED)
    check_transition(RecordState.TAGGED, RecordState.CLUSTERED)


@pytest.mark.parametrize(
    "current,target",
    [
        (RecordState.EXTRACTED, RecordState.CLUSTERED),
        (RecordState.TAGGED, RecordState.EXTRACTED),
        (RecordState.CLUSTERED, RecordState.TAGGED),
        (RecordState.CLUSTERED, RecordState.CLUSTERED),
    ],
)
def test_illegal_transitions_rejected(current, target):
    with pytest.raises(IllegalTransitionError):
        check_transition(current, target)


@pytest.mark.parametrize(
    "fields,expected",
    [
        ({"member_count": 1}, ClusterStage.GROWING),
        ({}, ClusterStage.NEEDS_SYNTHESIS),
        ({"synthesized_at": T - 10}, ClusterStage.NEEDS_SYNTHESIS),
        ({"synthesized_at": T}, ClusterStage.NEEDS_SCORING),
        ({"synthesized_at": T, "scored_at": T - 1}, ClusterStage.NEEDS_SCORING),
        ({"synthesized_at": T, "scored_at": T}, ClusterStage.FRESH),
        # a synthesized cluster never drops back to growing
        ({"member_count": 1, "synthesized_at": T, "scored_at": T}, ClusterStage.FRESH),
    ],
)
def test_cluster_lifecycle(fields, expected):
    assert _cluster(**fields).stage(2) is expected


def test_freshness_marker_is_latest_input():
    cluster = _cluster(updated_at=T + 5, synthesized_at=T)
    assert cluster.freshness_marker == T + 5
    assert _cluster(updated_at=None).freshness_marker is None
