import os
import tempfile

import pytest

# Read at import time by the script; keep test runs out of scripts/.
os.environ.setdefault("SFB_LOG_DIR", tempfile.mkdtemp(prefix="sft_digest_logs_"))


@pytest.fixture(autouse=True)
def usage_dir(tmp_path, monkeypatch):
    data_dir = tmp_path / "usage"
    monkeypatch.setenv("SFB_DIGEST_DATA_DIR", str(data_dir))
    return data_dir
