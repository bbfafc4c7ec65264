import os
import shutil
import sys
from typing import Optional

import click
from loguru import logger

from . import __version__
from .apk import ANDROID_MANIFEST, make_debuggable, open_package
from .archive import ArchiveStore
from .errors import MakeDebuggableError
from .signer import sign, zipalign

NAME = "makedebuggable"


def setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, format="{level}: {message}", level="DEBUG" if verbose else "INFO")
    logger.enable("makedebuggable")


@click.group(help="""
    makedebuggable - set android:debuggable="true" in an apk's manifest
""")
@click.version_option(__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log every decoded element.")
def cli(verbose: bool) -> None:
    setup_logging(verbose)


@cli.command(help="""
    Patch a binary AndroidManifest.xml.  Without OUTPUT_XML the manifest is
    only checked to be patchable.
""")
@click.argument("input_xml", type=click.Path(exists=True, dir_okay=False))
@click.argument("output_xml", type=click.Path(dir_okay=False), required=False)
def xml(input_xml: str, output_xml: Optional[str]) -> None:
    with open(input_xml, "rb") as f_in:
        patched = make_debuggable(f_in.read(), input_xml)
    if output_xml is None:
        return
    with open(output_xml, "wb") as f_out:
        f_out.write(patched)


@cli.command(help="""
    Patch the manifest of INPUT_APK into OUTPUT_APK.  With --keystore the
    result is aligned and signed (requires zipalign and apksigner).
""")
@click.option("--keystore", type=click.Path(exists=True, dir_okay=False), help="Keystore passed to apksigner.")
@click.option("--key-alias", help="Key alias passed to apksigner.")
@click.option("--ks-pass", help="Keystore password passed to apksigner.")
@click.argument("input_apk", type=click.Path(exists=True, dir_okay=False))
@click.argument("output_apk", type=click.Path(dir_okay=False))
@click.pass_context
def apk(ctx: click.Context, keystore: Optional[str], key_alias: Optional[str], ks_pass: Optional[str],
        input_apk: str, output_apk: str) -> None:
    if keystore and not (key_alias and ks_pass):
        raise click.exceptions.BadParameter("--keystore requires --key-alias and --ks-pass", ctx)
    tmp = output_apk + ".tmp"
    shutil.copyfile(input_apk, tmp)
    try:
        open_package(tmp).patch_to_debuggable()
        if keystore:
            zipalign(tmp, output_apk)
            try:
                sign(output_apk, keystore, key_alias, ks_pass)
            except BaseException:
                logger.info("Removing unsigned output...")
                os.remove(output_apk)
                raise
        else:
            os.replace(tmp, output_apk)
    finally:
        if os.path.exists(tmp):
            logger.info("Removing temporary file...")
            os.remove(tmp)


@cli.command(help="""
    Report whether APK is debuggable.
""")
@click.argument("apk_path", metavar="APK", type=click.Path(exists=True, dir_okay=False))
def check(apk_path: str) -> None:
    click.echo("debuggable" if open_package(apk_path).is_debuggable() else "not debuggable")


@cli.command(help="""
    Extract the entries of APK into DESTINATION.
""")
@click.option("--entry", help="Extract only this entry, e.g. {}.".format(ANDROID_MANIFEST))
@click.argument("apk_path", metavar="APK", type=click.Path(exists=True, dir_okay=False))
@click.argument("destination", type=click.Path(file_okay=False))
def extract(entry: Optional[str], apk_path: str, destination: str) -> None:
    store = ArchiveStore(apk_path)
    if entry:
        store.extract_entry(entry, destination)
    else:
        store.extract_all(destination)


def main() -> None:
    try:
        cli(prog_name=NAME)
    except MakeDebuggableError as e:
        click.echo(f"Error: {e}.", err=True)
        sys.exit(1)
