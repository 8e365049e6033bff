import json
import os
import tempfile
from pathlib import Path


def dump_json(payload, pretty: bool = False) -> str:
    if pretty:
        text = json.dumps(payload, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return text + "\n"


def write_json(path: str | Path, payload, pretty: bool = False) -> Path:
    """
    Write payload to path atomically: a sibling temp file is written, fsynced and
    renamed over the target, so readers never observe a partial file.
    """
    path = Path(path)
    path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    data = dump_json(payload, pretty).encode("utf-8")
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    return path
