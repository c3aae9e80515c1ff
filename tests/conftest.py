import importlib
import os
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

FAKE_OUTPUT = b"FAKEMP4!" * 2048

# Stand-in for the ffmpeg binary. FAKE_FFMPEG_MODE selects ok / fail / slow / silent;
# FAKE_FFMPEG_ARGS_LOG and FAKE_FFMPEG_PID_FILE let tests inspect the invocation.
FAKE_FFMPEG = """#!__PYTHON__
import os
import sys
import time

args = sys.argv[1:]
if args[:1] == ["-version"]:
    print("ffmpeg version 6.0-fake Copyright (c) 2000-2023")
    sys.exit(0)

mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
args_log = os.environ.get("FAKE_FFMPEG_ARGS_LOG")
if args_log:
    with open(args_log, "a") as handle:
        handle.write(" ".join(args) + "\\n")
pid_file = os.environ.get("FAKE_FFMPEG_PID_FILE")
if pid_file:
    with open(pid_file, "w") as handle:
        handle.write(str(os.getpid()))

sys.stderr.write("Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'input.mp4':\\n")
sys.stderr.write("  Duration: 00:00:10.00, start: 0.000000, bitrate: 1000 kb/s\\n")
sys.stderr.flush()

if mode == "fail":
    sys.stderr.write("input.mp4: Invalid data found when processing input\\n")
    sys.exit(1)

output = args[-1]
payload = b"FAKEMP4!" * 2048

for second in (2, 5, 8):
    sys.stderr.write("frame=  %d fps=0.0 q=-1.0 size=0kB time=00:00:0%d.00 bitrate=N/A speed=1x\\r" % (second * 10, second))
    sys.stderr.flush()

if mode == "silent":
    sys.exit(0)

if mode == "slow":
    sink = sys.stdout.buffer if output == "pipe:1" else open(output, "wb")
    while True:
        sink.write(payload)
        sink.flush()
        time.sleep(0.05)

if output == "pipe:1":
    sys.stdout.buffer.write(payload)
    sys.stdout.buffer.flush()
else:
    with open(output, "wb") as handle:
        handle.write(payload)
sys.exit(0)
"""


@pytest.fixture(scope="session")
def fake_ffmpeg(tmp_path_factory: pytest.TempPathFactory) -> Path:
    path = tmp_path_factory.mktemp("bin") / "ffmpeg"
    path.write_text(FAKE_FFMPEG.replace("__PYTHON__", sys.executable), encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture(scope="session")
def app_module(tmp_path_factory: pytest.TempPathFactory, fake_ffmpeg: Path):
    base = tmp_path_factory.mktemp("data")
    env = {
        "WORK_DIR": str(base / "work"),
        "LOGS_DIR": str(base / "logs"),
        "FFMPEG_BIN": str(fake_ffmpeg),
        "FFMPEG_TIMEOUT_SECONDS": "30",
        "MIN_FREE_SPACE_MB": "0",
        "MAX_UPLOAD_MB": "1",
        "DOWNLOAD_RETRIES": "1",
        "MAX_CONCURRENCY": "1",
        "QUEUE_MAX_LENGTH": "4",
        "ALLOWED_ORIGINS": "http://allowed.example, https://studio.example/",
    }
    for key, value in env.items():
        os.environ[key] = value
    for key in ("WATERMARK_URL", "WATERMARK_PATH", "WATERMARK_ASSET", "WM_WIDTH_PX"):
        os.environ.pop(key, None)

    module_name = "app.main"
    if module_name in sys.modules:
        del sys.modules[module_name]
    module = importlib.import_module(module_name)
    return module
