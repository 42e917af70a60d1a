import pytest
from click.testing import CliRunner
from e2ekit.BACKENDS.docker import DockerBackend
from e2ekit.BACKENDS.kind import KindBackend
from e2ekit.CLI import main
from e2ekit.CLI.main import cli

def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'disposable environments' in result.output

def test_cli_metrics(metrics_server, metrics_doc):
    metrics_server.body = metrics_doc
    runner = CliRunner()
    result = runner.invoke(cli, ['metrics', metrics_server.url, 'metric_a', 'metric_b_hist'])
    assert result.exit_code == 0
    assert 'metric_a      221' in result.output
    assert 'metric_b_hist 124' in result.output

def test_cli_metrics_options(metrics_server, metrics_doc):
    metrics_server.body = metrics_doc
    runner = CliRunner()
    result = runner.invoke(cli, [
        'metrics', metrics_server.url, 'metric_a', 'metric_b_hist', 'unknown',
        '--label', 'first="value1"', '--count', '--skip-missing',
    ])
    assert result.exit_code == 0
    assert 'unknown       0' in result.output

def test_cli_metrics_missing(metrics_server, metrics_doc):
    metrics_server.body = metrics_doc
    runner = CliRunner()
    result = runner.invoke(cli, ['metrics', metrics_server.url, 'unknown'])
    assert result.exit_code == 1
    assert 'metric not found' in result.output

def test_cli_metrics_bad_label(metrics_server):
    runner = CliRunner()
    result = runner.invoke(cli, ['metrics', metrics_server.url, 'metric_a', '--label', 'nonsense'])
    assert result.exit_code == 2
    assert 'invalid label matcher' in result.output

@pytest.mark.parametrize('backend,factory,expected', [
    ('docker', DockerBackend, ['docker', 'network', 'ls', '--quiet', '--filter', 'name=^leftover$']),
    ('kind', KindBackend, ['kind', 'delete', 'cluster', '--name', 'leftover']),
])
def test_cli_prune(monkeypatch, runner_factory, backend, factory, expected):
    recorder = runner_factory()
    monkeypatch.setitem(main.BACKENDS, backend, lambda: factory(recorder))
    runner = CliRunner()
    result = runner.invoke(cli, ['prune', 'leftover', '--backend', backend])
    assert result.exit_code == 0
    assert f'Pruned {backend} environment leftover.' in result.output
    assert expected in recorder.commands

def test_cli_prune_invalid_name():
    runner = CliRunner()
    result = runner.invoke(cli, ['prune', 'Not Valid', '--backend', 'kind'])
    assert result.exit_code == 2
