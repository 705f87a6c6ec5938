import pytest

from oplogrelay.collision import OplogRecord, PartialLogWithCallback
from oplogrelay.combiner import LogsGroupCombiner, OplogsGroup
from oplogrelay.oplog import PartialLog

MB = 1024 * 1024


def mock_log(op, ns, size, cb=False, callback=None):
    return OplogRecord(
        original=PartialLogWithCallback(
            partial_log=PartialLog(namespace=ns, operation=op, raw_size=size),
            callback=callback,
        ),
        wait=(lambda: None) if cb else None,
    )


def sizes(groups):
    return [len(g.oplog_records) for g in groups]


@pytest.mark.parametrize(
    "max_nr, max_size, specs, expected",
    [
        (10, 16 * MB, [("ns1", 1024)] * 4, [4]),
        (3, 16 * MB, [("ns1", 1024)] * 4, [3, 1]),
        (10, 16 * MB, [("ns1", 5 * MB), ("ns1", 7 * MB), ("ns1", 8 * MB), ("ns1", 1024)], [2, 2]),
        (10, 16 * MB, [("ns1", 16 * MB), ("ns1", 13 * MB), ("ns1", 8 * MB), ("ns1", 1024)], [1, 1, 2]),
        (
            10,
            16 * MB,
            [
                ("ns1", 16 * MB),
                ("ns2", 13 * MB),
                ("ns1", 8 * MB),
                ("ns1", 1024),
                ("ns1", 7 * MB),
                ("ns1", 1 * MB),
                ("ns1", 1),
            ],
            [1, 1, 3, 2],
        ),
        (
            10,
            16 * MB,
            [
                ("ns1", 16 * MB),
                ("ns2", 13 * MB),
                ("ns1", 8 * MB),
                ("ns1", 1024),
                ("ns1", 7 * MB),
                ("ns3", 1 * MB),
                ("ns1", 1),
            ],
            [1, 1, 3, 1, 1],
        ),
        (
            10,
            12 * MB,
            [("ns1", 16 * MB), ("ns2", 16 * MB), ("ns1", 16 * MB), ("ns1", 16 * MB),
             ("ns1", 16 * MB), ("ns3", 16 * MB), ("ns1", 16 * MB)],
            [1] * 7,
        ),
    ],
)
def test_merge_to_groups(max_nr, max_size, specs, expected):
    combiner = LogsGroupCombiner(max_group_nr=max_nr, max_group_size=max_size)
    logs = [mock_log("op1", ns, size) for ns, size in specs]
    assert sizes(combiner.merge_to_groups(logs)) == expected


def test_wait_forces_split():
    combiner = LogsGroupCombiner(max_group_nr=10, max_group_size=16 * MB)
    logs = [
        mock_log("op1", "ns1", 1024, cb=True),
        mock_log("op1", "ns1", 1024),
        mock_log("op1", "ns1", 1024),
    ]
    assert sizes(combiner.merge_to_groups(logs)) == [1, 2]


def test_different_op_splits():
    combiner = LogsGroupCombiner()
    logs = [mock_log("i", "ns1", 1), mock_log("u", "ns1", 1), mock_log("u", "ns1", 1)]
    groups = combiner.merge_to_groups(logs)
    assert [(g.op, g.ns) for g in groups] == [("i", "ns1"), ("u", "ns1")]
    assert sizes(groups) == [1, 2]


def test_empty_input():
    assert LogsGroupCombiner().merge_to_groups([]) == []


def test_group_completion_runs_callbacks_in_order():
    calls = []
    logs = [
        mock_log("i", "ns1", 1, callback=lambda: calls.append(1)),
        mock_log("i", "ns1", 1),
        mock_log("i", "ns1", 1, callback=lambda: calls.append(2)),
    ]
    groups = LogsGroupCombiner().merge_to_groups(logs)
    assert len(groups) == 1
    assert len(groups[0].completion_list) == 2
    groups[0].completion()
    assert calls == [1, 2]


def test_oplogs_group_completion_empty():
    group = OplogsGroup(ns="ns1", op="i")
    group.completion()
    assert group.completion_list == []