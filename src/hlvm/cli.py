"""Command line front end: ``hlvm compile | run | dis``."""

import logging
import sys
from pathlib import Path
from typing import List, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from . import __version__
from .compiler import Compiler
from .context import Context
from .disassembler import disassemble
from .environment import StorePolicy
from .errors import CompileError, VMError
from .protocol import DEFAULT_SEED, Bundle
from .values import to_string


def _parse_seed(ctx, param, value):
    if value is None:
        return DEFAULT_SEED
    try:
        return int(value, 0) & 0xFFFFFFFF
    except ValueError:
        raise click.BadParameter(f"not an integer: {value!r}")


def _load(path: str, seed: int) -> Tuple[bytes, List[str]]:
    """Load a bundle (``.json``) or compile a source file."""
    text = Path(path).read_text(encoding="utf-8")
    if path.endswith(".json"):
        bundle = Bundle.loads(text)
        return bundle.bytecode, bundle.strings
    program = Compiler(text, seed).compile()
    return program.bytecode, program.strings


def _fail(console: Console, error: Exception) -> None:
    kind = "Compile error" if isinstance(error, CompileError) else "Runtime error"
    console.print(f"[bold red]{kind}:[/bold red] {escape(str(error))}")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="hlvm")
@click.option("--verbose", "-v", is_flag=True, help="Log every dispatched instruction.")
@click.pass_context
def cli(ctx, verbose):
    """Compile, run and disassemble blinded bytecode programs."""
    ctx.obj = Console()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("compile")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.option("-o", "--output", type=click.Path(dir_okay=False), help="Bundle file to write.")
@click.option("--seed", callback=_parse_seed, help="Blinding seed (decimal or 0x hex).")
@click.pass_obj
def compile_command(console, source, output, seed):
    """Compile SOURCE into a JSON bundle."""
    try:
        program = Compiler(Path(source).read_text(encoding="utf-8"), seed).compile()
    except CompileError as e:
        _fail(console, e)
    bundle = Bundle.from_program(program)
    if output is None:
        click.echo(bundle.dumps())
        return
    Path(output).write_text(bundle.dumps() + "\n", encoding="utf-8")
    console.print(
        f"[bold green]Compiled[/bold green] {escape(source)} -> {escape(output)} "
        f"({len(program.bytecode)} bytes, {len(program.strings)} strings)"
    )


@cli.command("run")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--seed", callback=_parse_seed, help="Blinding seed for source files.")
@click.option("--strict", is_flag=True, help="Fail on stores to undeclared names.")
@click.option("--time-limit", type=float, default=None, help="Maximum run time in seconds.")
@click.pass_obj
def run_command(console, file, seed, strict, time_limit):
    """Run a source file or bundle."""
    context = Context(
        seed=seed,
        store_policy=StorePolicy.STRICT if strict else StorePolicy.IMPLICIT,
        time_limit=time_limit,
        print=lambda *args: click.echo(" ".join(to_string(a) for a in args)),
    )
    try:
        bytecode, strings = _load(file, seed)
        state = context.run(bytecode, strings)
    except (CompileError, VMError) as e:
        _fail(console, e)
    console.print(
        f"[bold green]Result:[/bold green] {escape(to_string(state.result))} "
        f"[dim]({state.steps} steps)[/dim]"
    )


@cli.command("dis")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--seed", callback=_parse_seed, help="Blinding seed for source files.")
@click.option("--no-bytes", is_flag=True, help="Omit instruction offsets.")
@click.option("--cfg", is_flag=True, help="Append control-flow edges.")
@click.pass_obj
def dis_command(console, file, seed, no_bytes, cfg):
    """Disassemble a source file or bundle."""
    try:
        bytecode, strings = _load(file, seed)
        text = disassemble(bytecode, strings, show_bytes=not no_bytes, include_cfg=cfg)
    except (CompileError, VMError) as e:
        _fail(console, e)
    console.print(Panel(
        escape(text),
        title=f"[bold blue]{escape(file)}[/bold blue]",
        border_style="blue",
        expand=False,
    ))


def main():
    cli()


if __name__ == "__main__":
    main()
