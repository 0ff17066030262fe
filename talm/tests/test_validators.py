import pytest

from talm.errors import ValidationError
from talm.modules.wizard import validators
from talm.modules.wizard.models import InitData
from talm.modules.wizard.processor import parse_hugepages


@pytest.mark.parametrize("call,code", [
    (lambda: validators.validate_network_cidr(" "), "VAL_001"),
    (lambda: validators.validate_network_cidr("10.0.0.0/40"), "VAL_002"),
    (lambda: validators.validate_cluster_name(""), "VAL_003"),
    (lambda: validators.validate_cluster_name("My_Cluster"), "VAL_004"),
    (lambda: validators.validate_cluster_name("a" * 51), "VAL_005"),
    (lambda: validators.validate_hostname(""), "VAL_006"),
    (lambda: validators.validate_hostname("-bad-"), "VAL_007"),
    (lambda: validators.validate_required("  ", "Disk"), "VAL_008"),
    (lambda: validators.validate_ip(""), "VAL_009"),
    (lambda: validators.validate_ip("300.1.1.1"), "VAL_010"),
    (lambda: validators.validate_dns_servers(""), "VAL_011"),
    (lambda: validators.validate_dns_servers("1.1.1.1, dns.example"), "VAL_012"),
    (lambda: validators.validate_node_type("router"), "VAL_013"),
    (lambda: validators.validate_preset("nope"), "VAL_014"),
    (lambda: validators.validate_api_server_url(""), "VAL_015"),
    (lambda: validators.validate_api_server_url("10.0.0.1:6443"), "VAL_016"),
    (lambda: validators.validate_api_server_url("https://10.0.0.1"), "VAL_017"),
])
def test_validation_codes(call, code):
    with pytest.raises(ValidationError) as exc:
        call()
    assert exc.value.code == code
    assert exc.value.exit_code == 2


def test_valid_inputs_pass():
    validators.validate_network_cidr("192.168.1.0/24")
    validators.validate_cluster_name("prod-1")
    validators.validate_hostname("node-1.example.com")
    validators.validate_ip("fd00::1")
    validators.validate_vip("")
    validators.validate_dns_servers("1.1.1.1, 8.8.8.8")
    validators.validate_api_server_url("https://[fd00::1]:6443")
    validators.validate_preset("cozystack")


def test_error_message_carries_code_and_details():
    with pytest.raises(ValidationError) as exc:
        validators.validate_ip("nope")
    assert str(exc.value).startswith("[VAL_010] invalid IP address: provided IP: nope")


def test_node_type_aliases():
    assert validators.normalize_node_type("control-plane") == "controlplane"
    assert validators.normalize_node_type("worker") == "worker"


def test_node_config_checks_every_field():
    data = InitData(node_type="worker", hostname="w1", disk="/dev/sda", interface="eth0",
                    addresses="10.0.0.2/24", gateway="10.0.0.1", dns_servers="1.1.1.1")
    validators.validate_node_config(data)
    data.gateway = ""
    with pytest.raises(ValidationError) as exc:
        validators.validate_node_config(data)
    assert exc.value.code == "VAL_008"
    assert "Gateway" in exc.value.message


def test_parse_hugepages():
    assert parse_hugepages("") == 0
    assert parse_hugepages(" 512 ") == 512
    with pytest.raises(ValidationError):
        parse_hugepages("many")
    with pytest.raises(ValidationError):
        parse_hugepages("-1")
