"""zipalign and apksigner wrappers.

The patched package keeps its old signature files, so it has to be aligned
and signed again before it can be installed.
"""

import subprocess
from shutil import which
from typing import List

from loguru import logger

from .errors import SigningError


def _tool(name: str) -> str:
    location = which(name)
    if not location:
        raise SigningError("{} not found in path".format(name))
    logger.info("Using {} at {}", name, location)
    return location


def _run(args: List[str], what: str) -> None:
    if subprocess.run(args).returncode != 0:
        logger.warning("{} failed", what)
        raise SigningError("{} failed".format(what))


def zipalign(source: str, destination: str) -> None:
    zipalign_loc = _tool("zipalign")
    logger.info("Aligning...")
    _run([zipalign_loc, "-p", "-f", "-v", "4", source, destination], "zipalign")
    logger.info("Verifying alignment...")
    _run([zipalign_loc, "-c", "-v", "4", destination], "Alignment verification")


def sign(apk: str, keystore: str, key_alias: str, keystore_password: str) -> None:
    apksigner_loc = _tool("apksigner")
    logger.info("Signing...")
    _run([apksigner_loc, "sign", "--ks", keystore, "--ks-key-alias", key_alias,
          "--ks-pass", "pass:{}".format(keystore_password), apk], "apksigner")
    logger.info("Verifying signature...")
    _run([apksigner_loc, "verify", apk], "Signature verification")
