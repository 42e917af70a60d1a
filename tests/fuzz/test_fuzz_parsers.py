import random
import string
import pytest
from e2ekit.BACKENDS.docker import parse_network_gateway, parse_port_mapping
from e2ekit.BACKENDS.kind import match_node_ports, parse_node_ip
from e2ekit.errors import BackendError, E2EError
from e2ekit.INSTRUMENTED.metrics import sum_metrics_from_text
from e2ekit.MODELS.metrics_options import LabelMatcher, build_metrics_options, skip_missing_metrics

def random_string(length):
    return ''.join(random.choice(string.printable) for _ in range(length))

def test_fuzz_port_mapping():
    for _ in range(200):
        content = random_string(random.randint(0, 200))
        try:
            port = parse_port_mapping(content)
        except BackendError:
            continue
        assert isinstance(port, int)

def test_fuzz_network_gateway():
    for _ in range(200):
        content = random_string(random.randint(0, 200))
        # Any deviation from the expected shape is a BackendError
        with pytest.raises(BackendError):
            parse_network_gateway(content)

def test_fuzz_kubectl_output():
    for _ in range(200):
        content = random_string(random.randint(0, 200))
        with pytest.raises(BackendError):
            parse_node_ip(content)
        with pytest.raises(BackendError):
            match_node_ports("web", {"http": 80}, content)

def test_fuzz_metrics_text():
    options = build_metrics_options(skip_missing_metrics())
    for _ in range(200):
        content = random_string(random.randint(0, 500))
        try:
            sum_metrics_from_text(content, ["metric_a"], options)
        except E2EError:
            pass

def test_fuzz_label_matcher():
    for _ in range(200):
        content = random_string(random.randint(0, 50))
        try:
            LabelMatcher.parse(content)
        except ValueError:
            pass

def test_edge_cases_parsers():
    # Empty string
    with pytest.raises(BackendError):
        parse_port_mapping("")

    # Only whitespace
    with pytest.raises(BackendError):
        parse_port_mapping("   \n\t  ")

    # Very long line
    with pytest.raises(BackendError):
        parse_port_mapping("0.0.0.0:" + "a" * 10000)

    # Empty metrics page
    assert sum_metrics_from_text("", ["m"], build_metrics_options(skip_missing_metrics())) == [0]
