import zipfile

import pytest
from loguru import logger

from tests.binxml import manifest


@pytest.fixture(autouse=True)
def quiet_logger():
    yield
    # the cli installs its own sink; drop it so later tests don't write to a closed stream
    logger.remove()
    logger.disable("makedebuggable")


def build_apk(path, entries):
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data, zipfile.ZIP_DEFLATED)
    return str(path)


@pytest.fixture
def apk_file(tmp_path):
    return build_apk(tmp_path / "app.apk", {
        "AndroidManifest.xml": manifest(),
        "classes.dex": b"dex\n035\x00" + bytes(range(256)),
        "res/layout/main.xml": b"\x03\x00\x08\x00\x08\x00\x00\x00",
    })
