import os
import tempfile


def ensure_dir(path: str) -> None:
    """Create directory if missing (mkdir -p equivalent)."""
    os.makedirs(path, exist_ok=True)


def write_atomic(path: str, data, mode: str = "wb") -> None:
    """Write data to a temporary file then atomically rename to target path."""
    dir_path = os.path.dirname(path)
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, mode) as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def batch_output_dir(site_root: str, batch_id: int) -> str:
    return os.path.join(site_root, "certificates", f"batch_{batch_id}")


def certificate_output_path(site_root: str, batch_id: int, certificate_id: str) -> str:
    return os.path.join(batch_output_dir(site_root, batch_id), f"{certificate_id}.pdf")


def template_dir(site_root: str) -> str:
    return os.path.join(site_root, "templates")


def remove_batch_files(site_root: str, batch_id: int) -> int:
    base_dir = batch_output_dir(site_root, batch_id)
    removed = 0
    if os.path.isdir(base_dir):
        for name in os.listdir(base_dir):
            if name.lower().endswith(".pdf"):
                try:
                    os.remove(os.path.join(base_dir, name))
                    removed += 1
                except FileNotFoundError:
                    pass
    return removed
