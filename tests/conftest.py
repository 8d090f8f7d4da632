"""pytest fixtures for pagescli tests"""
import io, random, tarfile
from pathlib import Path
import pytest
import zstandard as zstd

@pytest.fixture
def tmp_src(tmp_path):
    """Source directory to upload"""
    src = tmp_path / "site"
    src.mkdir()
    return src

@pytest.fixture
def file_tree():
    """Lay out a site tree from a nested dict"""
    def _gen(root: Path, layout: dict):
        """
        layout: {
            "index.html": 512,                  # random bytes of that length
            "robots.txt": b"User-agent: *",     # literal content
            "assets/": {"app.js": 4096},        # directory
            "latest": ("symlink", "index.html"),
        }
        """
        root.mkdir(parents=True, exist_ok=True)
        rng = random.Random(42)

        def create(base: Path, items: dict):
            for name, val in items.items():
                path = base / name
                if name.endswith('/'):
                    path = base / name.rstrip('/')
                    path.mkdir(exist_ok=True)
                    if isinstance(val, dict):
                        create(path, val)
                elif isinstance(val, tuple) and val[0] == "symlink":
                    path.symlink_to(val[1])
                elif isinstance(val, bytes):
                    path.write_bytes(val)
                elif isinstance(val, int):
                    path.write_bytes(rng.randbytes(val))

        create(root, layout)
        return root
    return _gen

@pytest.fixture
def untar():
    """Decode an archive body into [(TarInfo, data), ...] in stream order"""
    def _untar(body: bytes, compressed: bool = True):
        fileobj = io.BytesIO(body)
        if compressed:
            fileobj = zstd.ZstdDecompressor().stream_reader(fileobj)
        result = []
        with tarfile.open(fileobj=fileobj, mode="r|") as tar:
            for m in tar:
                data = tar.extractfile(m).read() if m.isreg() else b""
                result.append((m, data))
        return result
    return _untar
