# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for e2ekit.
"""
import logging
import click
from ..BACKENDS.docker import DockerBackend
from ..BACKENDS.kind import KindBackend
from ..errors import E2EError
from ..INSTRUMENTED.metrics import fetch_metrics, sum_metrics_from_text
from ..MODELS.metrics_options import (
    LabelMatcher,
    build_metrics_options,
    skip_missing_metrics,
    with_label_matchers,
    with_metric_count,
)

BACKENDS = {
    'docker': DockerBackend,
    'kind': KindBackend,
}

@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Log every backend command')
@click.pass_context
def cli(ctx, verbose):
    """
    e2ekit - disposable environments for end-to-end tests and benchmarks.
    """
    ctx.ensure_object(dict)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

@cli.command()
@click.argument('name')
@click.option('--backend', '-b', type=click.Choice(sorted(BACKENDS)), default='docker')
def prune(name, backend):
    """Remove leftovers of an environment that was not closed."""
    backend_impl = BACKENDS[backend]()
    try:
        backend_impl.validate_name(name)
    except E2EError as e:
        raise click.BadParameter(str(e), param_hint='NAME')
    backend_impl.teardown(name)
    click.echo(f"Pruned {backend} environment {name}.")

@cli.command()
@click.argument('url')
@click.argument('names', nargs=-1, required=True)
@click.option('--label', '-l', 'labels', multiple=True, help='Label matcher, e.g. job=~"api.*"')
@click.option('--count', is_flag=True, help='Sum histogram/summary counts instead of sums')
@click.option('--skip-missing', is_flag=True, help='Count missing metrics as zero')
@click.option('--timeout', default=5.0, show_default=True, help='Scrape timeout in seconds')
def metrics(url, names, labels, count, skip_missing, timeout):
    """Scrape URL once and print the sum of every metric NAME."""
    try:
        matchers = [LabelMatcher.parse(label) for label in labels]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--label')

    opts = []
    if matchers:
        opts.append(with_label_matchers(*matchers))
    if count:
        opts.append(with_metric_count())
    if skip_missing:
        opts.append(skip_missing_metrics())

    try:
        sums = sum_metrics_from_text(fetch_metrics(url, timeout), names, build_metrics_options(*opts))
    except E2EError as e:
        raise click.ClickException(str(e))

    width = max(len(name) for name in names)
    for name, value in zip(names, sums):
        click.echo(f"{name:{width}} {value:g}")

def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})

if __name__ == '__main__':
    main()
