from pathlib import Path

import pytest
import yaml

from kubestrap.config.models import ClusterOptions, ClusterSpec, NodeSpec
from kubestrap.errors import EmptyClusterError, MissingControlPlaneError, QuorumError
from kubestrap.inventory.renderer import InventoryDocument, render, write_inventory


def _node(name, ip, *roles, **kw):
    return NodeSpec(hostname=name, management_address=ip, roles=list(roles), **kw)


def test_render_yaml_groups_and_host_vars(cluster):
    doc = render(cluster)
    data = yaml.safe_load(doc.content)["all"]

    assert list(data["hosts"]) == ["knode01", "knode02", "knode03"]
    assert data["hosts"]["knode01"] == {
        "ansible_host": "10.255.0.51",
        "ip": "10.255.0.51",
        "access_ip": "10.255.0.51",
    }
    children = data["children"]
    assert list(children["kube_control_plane"]["hosts"]) == ["knode01", "knode02", "knode03"]
    assert list(children["etcd"]["hosts"]) == ["knode01", "knode02", "knode03"]
    assert list(children["kube_node"]["hosts"]) == ["knode01", "knode02", "knode03"]
    assert children["load_balancer"]["hosts"] == {}
    assert set(children["k8s_cluster"]["children"]) == {"kube_control_plane", "kube_node"}
    assert data["vars"]["cluster_name"] == "lab"
    assert data["vars"]["kube_network_plugin"] == "calico"


def test_render_is_deterministic(cluster):
    a = render(cluster)
    b = render(cluster)
    assert a.content == b.content
    assert a.digest == b.digest


def test_render_uses_reachable_address_for_access_ip():
    spec = ClusterSpec(nodes=(
        _node("knode01", "192.168.10.51", "control-plane", "etcd",
              reachable_address="10.255.0.51", ssh_user="ops", ssh_port=2222),
    ))
    hv = yaml.safe_load(render(spec).content)["all"]["hosts"]["knode01"]
    assert hv["ansible_host"] == "192.168.10.51"
    assert hv["access_ip"] == "10.255.0.51"
    assert hv["ansible_user"] == "ops"
    assert hv["ansible_port"] == 2222


def test_empty_cluster_rejected():
    with pytest.raises(EmptyClusterError):
        render(ClusterSpec(nodes=()))


def test_missing_control_plane_rejected():
    spec = ClusterSpec(nodes=(_node("knode01", "10.255.0.51", "worker", "etcd"),))
    with pytest.raises(MissingControlPlaneError):
        render(spec)


def test_even_colocated_etcd_rejected():
    spec = ClusterSpec(nodes=(
        _node("knode01", "10.255.0.51", "control-plane", "etcd"),
        _node("knode02", "10.255.0.52", "control-plane", "etcd"),
        _node("knode03", "10.255.0.53", "worker"),
    ))
    with pytest.raises(QuorumError) as ei:
        render(spec)
    assert ei.value.members == ["knode01", "knode02"]


def test_even_control_plane_with_extra_etcd_member_rejected():
    # three etcd members, but the two control-plane nodes still need a tie-breaker
    spec = ClusterSpec(nodes=(
        _node("knode01", "10.255.0.51", "control-plane", "etcd"),
        _node("knode02", "10.255.0.52", "control-plane", "etcd"),
        _node("etcd03", "10.255.0.63", "etcd"),
    ))
    with pytest.raises(QuorumError) as ei:
        render(spec)
    assert ei.value.members == ["knode01", "knode02"]


def test_odd_control_plane_with_four_etcd_members_allowed():
    spec = ClusterSpec(nodes=(
        _node("knode01", "10.255.0.51", "control-plane", "etcd"),
        _node("knode02", "10.255.0.52", "control-plane"),
        _node("knode03", "10.255.0.53", "control-plane"),
        _node("etcd04", "10.255.0.64", "etcd"),
        _node("etcd05", "10.255.0.65", "etcd"),
        _node("etcd06", "10.255.0.66", "etcd"),
    ))
    doc = render(spec)
    assert "etcd06" in doc.content


def test_even_external_etcd_allowed():
    spec = ClusterSpec(nodes=(
        _node("knode01", "10.255.0.51", "control-plane"),
        _node("etcd01", "10.255.0.61", "etcd"),
        _node("etcd02", "10.255.0.62", "etcd"),
    ))
    doc = render(spec)
    assert "etcd02" in doc.content


def test_render_ini(cluster):
    spec = cluster.model_copy(update={"options": ClusterOptions(name="lab", kube_version="v1.30.4")})
    doc = render(spec, "ini")

    assert doc.format == "ini"
    assert doc.filename == "hosts.ini"
    lines = doc.content.splitlines()
    assert "knode01 ansible_host=10.255.0.51 ip=10.255.0.51 access_ip=10.255.0.51" in lines
    assert "[kube_control_plane]" in lines
    assert "[load_balancer]" in lines
    assert "[k8s_cluster:children]" in lines
    assert "kube_version=v1.30.4" in lines
    assert render(spec, "ini").content == doc.content


def test_render_ini_all_section_has_one_line_per_host(cluster):
    lines = render(cluster, "ini").content.splitlines()

    start = lines.index("[all]") + 1
    section = lines[start:start + 3]
    assert [ln.split()[0] for ln in section] == ["knode01", "knode02", "knode03"]
    assert lines[start + 3] == ""
    assert lines[start + 4].startswith("[")


def test_render_ini_host_line_keeps_ssh_overrides():
    spec = ClusterSpec(nodes=(
        _node("knode01", "10.255.0.51", "control-plane", "etcd", ssh_user="ops", ssh_port=2222),
    ))
    lines = render(spec, "ini").content.splitlines()

    host = lines[lines.index("[all]") + 1]
    assert host.startswith("knode01 ansible_host=10.255.0.51 ")
    assert "ansible_user=ops" in host.split()
    assert "ansible_port=2222" in host.split()


def test_render_unknown_format(cluster):
    with pytest.raises(ValueError):
        render(cluster, "toml")


def test_write_inventory_reports_changes(tmp_path: Path, cluster):
    target = tmp_path / "inventory" / "hosts.yaml"
    doc = render(cluster)

    assert write_inventory(doc, target) is True
    assert target.read_text() == doc.content
    assert write_inventory(doc, target) is False

    assert write_inventory(InventoryDocument(content="all: {}\n"), target) is True
    assert target.read_text() == "all: {}\n"
    assert not list(target.parent.glob("*.tmp"))
