import pytest

from matrixci.dsl import job, matrix, sh
from matrixci.errors import MatrixError
from matrixci.matrix import (
    CrossProductEntry,
    IncludeOverrideEntry,
    cross_product,
    expand_job,
    merge_includes,
)
from matrixci.model import InstanceStatus

OSES = ["ubuntu-latest", "macOS-latest", "windows-latest"]
RUSTS = ["stable", "nightly"]


def _test_job(m):
    return job("test", sh("test", "cargo test"), matrix=m)


def test_no_matrix_expands_to_single_unit_instance():
    instances = expand_job(job("check", sh("check", "cargo check")))
    assert len(instances) == 1
    assert instances[0].matrix == {}
    assert instances[0].id == "check"
    assert instances[0].status is InstanceStatus.PENDING


def test_cross_product_order_is_deterministic():
    instances = expand_job(_test_job(matrix(os=OSES, rust=RUSTS)))
    assert [(i.matrix["os"], i.matrix["rust"]) for i in instances] == [
        ("ubuntu-latest", "stable"),
        ("ubuntu-latest", "nightly"),
        ("macOS-latest", "stable"),
        ("macOS-latest", "nightly"),
        ("windows-latest", "stable"),
        ("windows-latest", "nightly"),
    ]
    assert instances[0].id == "test (ubuntu-latest, stable)"


def test_matching_include_augments_without_adding_instances():
    m = matrix(
        os=OSES,
        rust=RUSTS,
        include=[{"os": "windows-latest", "rustflags": "-C target-feature=+crt-static"}],
    )
    instances = expand_job(_test_job(m))

    assert len(instances) == 6
    windows = [i for i in instances if i.matrix["os"] == "windows-latest"]
    others = [i for i in instances if i.matrix["os"] != "windows-latest"]
    assert all(i.matrix["rustflags"] == "-C target-feature=+crt-static" for i in windows)
    assert all("rustflags" not in i.matrix for i in others)


@pytest.mark.parametrize("non_matching", [0, 1, 3])
def test_non_matching_includes_are_appended(non_matching):
    includes = [{"os": f"freebsd-{n}", "rust": "stable"} for n in range(non_matching)]
    includes.append({"os": "ubuntu-latest", "coverage": True})
    instances = expand_job(_test_job(matrix(os=OSES, rust=RUSTS, include=includes)))

    assert len(instances) == len(OSES) * len(RUSTS) + non_matching
    extra = instances[len(OSES) * len(RUSTS):]
    assert [i.matrix["os"] for i in extra] == [f"freebsd-{n}" for n in range(non_matching)]


def test_later_include_wins_on_conflict():
    m = matrix(
        os=OSES,
        rust=RUSTS,
        include=[
            {"os": "windows-latest", "flag": "first"},
            {"os": "windows-latest", "rust": "stable", "flag": "second"},
        ],
    )
    instances = {(i.matrix["os"], i.matrix["rust"]): i for i in expand_job(_test_job(m))}

    assert instances[("windows-latest", "stable")].matrix["flag"] == "second"
    assert instances[("windows-latest", "nightly")].matrix["flag"] == "first"


def test_include_never_overwrites_original_axis_value():
    # rust differs, so the include matches nothing and stands alone
    m = matrix(os=["ubuntu-latest"], rust=["stable"], include=[{"os": "ubuntu-latest", "rust": "beta"}])
    instances = expand_job(_test_job(m))

    assert [i.matrix for i in instances] == [
        {"os": "ubuntu-latest", "rust": "stable"},
        {"os": "ubuntu-latest", "rust": "beta"},
    ]


def test_include_with_only_new_keys_applies_everywhere():
    instances = expand_job(_test_job(matrix(os=OSES, include=[{"experimental": False}])))
    assert len(instances) == 3
    assert all(i.matrix["experimental"] is False for i in instances)


def test_exclude_removes_combinations():
    m = matrix(os=OSES, rust=RUSTS, exclude=[{"os": "macOS-latest", "rust": "nightly"}])
    instances = expand_job(_test_job(m))
    assert len(instances) == 5
    assert {"os": "macOS-latest", "rust": "nightly"} not in [i.matrix for i in instances]


def test_include_only_matrix():
    m = matrix(include=[{"os": "ubuntu-latest"}, {"os": "windows-latest"}])
    assert [i.id for i in expand_job(_test_job(m))] == ["test (ubuntu-latest)", "test (windows-latest)"]


def test_merge_pass_produces_tagged_entries():
    entries = cross_product(matrix(os=["a", "b"]))
    merged = merge_includes(entries, [{"os": "a", "x": 1}, {"os": "c"}])

    assert isinstance(merged[0], CrossProductEntry)
    assert merged[0].assignment() == {"os": "a", "x": 1}
    assert isinstance(merged[2], IncludeOverrideEntry)
    assert merged[2].index == 1


@pytest.mark.parametrize(
    "m",
    [
        matrix(os=[]),
        matrix(include=[]),
        matrix(os=OSES, exclude=[{"arch": "arm"}]),
        matrix(os=OSES, exclude=[{"os": o} for o in OSES]),
    ],
)
def test_malformed_matrix(m):
    with pytest.raises(MatrixError):
        expand_job(_test_job(m))


def test_axis_must_be_a_list():
    j = _test_job(matrix(os=OSES))
    j.matrix.axes["rust"] = "stable"
    with pytest.raises(MatrixError):
        expand_job(j)


def test_duplicate_standalone_includes_rejected():
    m = matrix(os=["ubuntu-latest"], include=[{"os": "freebsd"}, {"os": "freebsd"}])
    with pytest.raises(MatrixError):
        expand_job(_test_job(m))


def test_values_that_print_alike_get_qualified_ids():
    instances = expand_job(_test_job(matrix(include=[{"v": 1}, {"v": "1"}])))
    assert [i.id for i in instances] == ["test (v=1)", "test (v='1')"]


def test_same_value_under_different_keys_gets_qualified_ids():
    instances = expand_job(_test_job(matrix(include=[{"os": "linux"}, {"target": "linux"}])))
    assert [i.id for i in instances] == ["test (os='linux')", "test (target='linux')"]


def test_only_colliding_ids_are_qualified():
    instances = expand_job(_test_job(matrix(os=["1", "2"], include=[{"os": 1}])))
    assert [i.id for i in instances] == ["test (os='1')", "test (2)", "test (os=1)"]
