import logging
import shutil
from pathlib import Path

logger = logging.getLogger("fuzzer")


def create_dir(path: Path):
    path.mkdir(parents=True, exist_ok=True)


def create_file(path: Path, content: str | bytes):
    """Write `content` to `path`, creating parent directories as needed."""
    create_dir(path.parent)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content)


def append_line(path: Path, line: str):
    create_dir(path.parent)
    with path.open("a") as handle:
        handle.write(line.rstrip("\n") + "\n")


def clean_dir(path: Path):
    """Remove everything below `path` but keep the directory itself."""
    if not path.exists():
        create_dir(path)
        return
    for item in path.iterdir():
        if item.is_dir():
            shutil.rmtree(item)
        else:
            item.unlink()


def path_to_binary(name: str) -> Path:
    found = shutil.which(name)
    if found is None:
        raise FileNotFoundError(f"unable to find '{name}' on PATH")
    logger.debug(f"resolved binary {name} -> {found}")
    return Path(found)
