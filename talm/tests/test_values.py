import json

import pytest

from talm.errors import ValueShapeError, ValueTypeError
from talm.modules.values import (
    ValueSources,
    get_path,
    load_node_overlay,
    merge_values,
    parse_literal,
    parse_set,
    resolve_values,
)


def test_merge_is_deep_and_does_not_mutate():
    base = {"cluster": {"name": "a", "network": {"podSubnets": ["10.244.0.0/16"]}}}
    override = {"cluster": {"network": {"serviceSubnets": ["10.96.0.0/16"]}}}
    merged = merge_values(base, override)
    assert merged["cluster"]["name"] == "a"
    assert merged["cluster"]["network"] == {
        "podSubnets": ["10.244.0.0/16"],
        "serviceSubnets": ["10.96.0.0/16"],
    }
    assert "serviceSubnets" not in base["cluster"]["network"]


def test_merge_with_empty_is_identity():
    a = {"x": 1, "y": {"z": [1, 2]}}
    b = {"y": {"z": [3]}, "w": "s"}
    assert merge_values({}, a) == a
    assert merge_values(a, {}) == a
    assert merge_values({}, merge_values(a, b)) == merge_values(a, b)


def test_lists_are_replaced_not_concatenated():
    assert merge_values({"l": [1, 2]}, {"l": [3]}) == {"l": [3]}


def test_null_resets_key():
    assert merge_values({"a": {"b": 1}}, {"a": None}) == {"a": None}


def test_mapping_collision_reports_path():
    with pytest.raises(ValueTypeError) as exc:
        merge_values({"machine": {"install": "x"}}, {"machine": {"install": {"disk": "/dev/sda"}}})
    assert exc.value.path == "machine.install"


def test_set_typed_scalars_lists_and_indices():
    tree = {}
    parse_set("a.b=1,a.c=true,a.d=null,e={x,y}", tree)
    parse_set("list[1].name=eth0", tree)
    assert tree["a"] == {"b": 1, "c": True, "d": None}
    assert tree["e"] == ["x", "y"]
    assert tree["list"] == [None, {"name": "eth0"}]


def test_set_string_keeps_strings():
    tree = parse_set("port=6443,flag=true", {}, typed=False)
    assert tree == {"port": "6443", "flag": "true"}


def test_set_literal_keeps_commas():
    tree = parse_literal("args=a,b,c", {})
    assert tree == {"args": "a,b,c"}


def test_set_into_scalar_fails():
    with pytest.raises(ValueTypeError):
        parse_set("a.b=1", {"a": "scalar"})


def test_priority_order(tmp_path):
    values_file = tmp_path / "extra.yaml"
    values_file.write_text("endpoint: from-file\nname: file\nkeep: yes-file\n")
    content_file = tmp_path / "cert.pem"
    content_file.write_text("PEM")
    sources = ValueSources(
        value_files=[str(values_file)],
        values=["name=set,endpoint=set"],
        string_values=["name=string"],
        file_values=[f"cert=@{content_file}"],
        json_values=[json.dumps({"endpoint": "json"})],
    )
    tree = resolve_values(sources, {"endpoint": "default", "other": 1})
    assert tree["endpoint"] == "json"
    assert tree["name"] == "string"
    assert tree["keep"] == "yes-file"
    assert tree["cert"] == "PEM"
    assert tree["other"] == 1


def test_json_value_with_key_path():
    tree = resolve_values(ValueSources(json_values=['machine.network={"hostname": "n1"}']), {})
    assert tree == {"machine": {"network": {"hostname": "n1"}}}


def test_values_file_must_be_mapping(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("- a\n- b\n")
    with pytest.raises(ValueShapeError):
        resolve_values(ValueSources(value_files=[str(bad)]), {})


def test_node_overlay_ignores_modeline_comment(tmp_path):
    (tmp_path / "nodes").mkdir()
    (tmp_path / "nodes" / "node1.yaml").write_text(
        '# talm: nodes=["10.0.0.2"], endpoints=["10.0.0.2"], templates=["templates/worker.yaml"]\n'
        "machine:\n  network:\n    hostname: alpha\n"
    )
    overlay = load_node_overlay(tmp_path, "node1")
    assert get_path(overlay, "machine.network.hostname") == "alpha"
    assert load_node_overlay(tmp_path, "missing") == {}


def test_get_path_default():
    assert get_path({"a": [{"b": 2}]}, "a[0].b") == 2
    assert get_path({"a": {}}, "a.missing", "dflt") == "dflt"
