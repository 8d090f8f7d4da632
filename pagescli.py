#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = ["zstandard>=0.22", "requests>=2.31"]
# ///
"""pagescli - publish, update or delete a static site on a git-pages server"""
from __future__ import annotations
import sys, os, re, stat, io, hashlib, tarfile, threading, queue, uuid
from pathlib import Path
from typing import Iterator
from dataclasses import dataclass, field
from enum import IntEnum
from urllib.parse import urlsplit, urlunsplit, urljoin
import requests
import zstandard as zstd

__version__ = "0.1.0"

# === Constants & Types ===
# Below this size a placeholder round-trip costs more than re-sending the bytes.
INCREMENTAL_THRESHOLD = 256
BLOB_PREFIX = "/git/blobs/"
ZSTD_LEVEL = 3
USAGE_EXIT = 125

TAR_ZSTD = "application/x-tar+zstd"
TAR = "application/x-tar"
UNRESOLVED = "application/vnd.git-pages.unresolved"
ACCEPT = f"{UNRESOLVED};q=1.0, text/plain;q=0.9"

class Kind(IntEnum):
    DIR=0; FILE=1; LINK=2

class UsageError(ValueError): pass

class UnsupportedEntry(RuntimeError):
    """Filesystem object that cannot be represented in a site archive"""

class UpdateFailed(RuntimeError):
    """Server rejected the request; body holds its diagnostic text"""
    def __init__(self, status: int, body: str):
        super().__init__(f"server responded {status}")
        self.status, self.body = status, body

def version_info() -> str:
    return f"git-pages-cli {__version__}"

# === Content Addressing ===
def blob_hash(data: bytes | memoryview) -> str:
    """Git-style blob address: sha256 over b"blob <len>\\0" + data, hex encoded"""
    h = hashlib.sha256(b"blob %d\0" % len(data))
    h.update(data)
    return h.hexdigest()

# === Tree Walk ===
@dataclass(slots=True, frozen=True)
class TreeEntry:
    path: str
    kind: Kind
    root: Path = field(repr=False, compare=False)
    target: str = ""

    def read(self) -> bytes:
        return (self.root / self.path).read_bytes()

def _kind_name(mode: int) -> str:
    if stat.S_ISCHR(mode) or stat.S_ISBLK(mode): return "device"
    if stat.S_ISSOCK(mode): return "socket"
    if stat.S_ISFIFO(mode): return "fifo"
    return "non-regular file"

def walk(root: Path) -> Iterator[TreeEntry]:
    """Pre-order walk of root: '.' first, then each directory's entries sorted by name.

    Symlinks are reported, never followed. Holds no state between calls, so
    repeated walks of an unchanged tree yield identical sequences."""
    root = Path(root)
    yield TreeEntry(".", Kind.DIR, root)
    yield from _walk_dir(root, "")

def _walk_dir(root: Path, rel: str) -> Iterator[TreeEntry]:
    with os.scandir(root / rel if rel else root) as it:
        items = sorted(it, key=lambda d: d.name)
    for d in items:
        path = f"{rel}/{d.name}" if rel else d.name
        mode = d.stat(follow_symlinks=False).st_mode
        if stat.S_ISLNK(mode):
            yield TreeEntry(path, Kind.LINK, root, os.readlink(d.path))
        elif stat.S_ISDIR(mode):
            yield TreeEntry(path, Kind.DIR, root)
            yield from _walk_dir(root, path)
        elif stat.S_ISREG(mode):
            yield TreeEntry(path, Kind.FILE, root)
        else:
            raise UnsupportedEntry(f"cannot archive {_kind_name(mode)} {path}")

def list_tree(cfg: UploadConfig, verbose: bool = False) -> int:
    """Walk the whole tree once, failing before any network traffic on bad input"""
    n = 0
    for e in walk(cfg.root):
        n += 1
        if verbose:
            label = {Kind.DIR: "dir", Kind.FILE: "file", Kind.LINK: "symlink"}[e.kind]
            print(f"{label:<7} {cfg.prefix}{e.path}", file=sys.stderr)
    return n

# === Archive Encoding ===
@dataclass
class UploadConfig:
    root: Path
    prefix: str = ""
    incremental: bool = False
    threshold: int = INCREMENTAL_THRESHOLD

def normalize_prefix(path: str) -> str:
    p = path.strip("/")
    return p + "/" if p else ""

def archive_entry(e: TreeEntry, cfg: UploadConfig, need: set[str]) -> tuple[tarfile.TarInfo | None, bytes]:
    """Map one tree entry to a tar header and body; None for the bare root"""
    if e.path == ".":
        if not cfg.prefix: return None, b""
        name = cfg.prefix.rstrip("/")
    else:
        name = cfg.prefix + e.path
    data = b""
    if e.kind == Kind.DIR:
        info = tarfile.TarInfo(name + "/")
        info.type, info.mode = tarfile.DIRTYPE, 0o755
    elif e.kind == Kind.LINK:
        info = tarfile.TarInfo(name)
        info.type, info.linkname = tarfile.SYMTYPE, e.target
    else:
        info = tarfile.TarInfo(name)
        data = e.read()
        if cfg.incremental and len(data) > cfg.threshold:
            h = blob_hash(data)
            if h not in need:
                info.type, info.linkname = tarfile.SYMTYPE, BLOB_PREFIX + h
                return info, b""
        info.size = len(data)
    return info, data

def write_archive(fileobj, cfg: UploadConfig, need=()) -> None:
    """Write root as a zstd-compressed tar, eliding large blobs not in need"""
    need = set(need)
    zw = zstd.ZstdCompressor(level=ZSTD_LEVEL).stream_writer(fileobj, closefd=False)
    tar = tarfile.open(fileobj=zw, mode="w|", format=tarfile.PAX_FORMAT)
    for e in walk(cfg.root):
        info, data = archive_entry(e, cfg, need)
        if info is None: continue
        tar.addfile(info, io.BytesIO(data) if data else None)
    # tar trailer must land inside the zstd frame
    tar.close()
    zw.close()

def whiteout(path: str) -> bytes:
    """Single uncompressed tar header marking path's subtree for deletion"""
    info = tarfile.TarInfo(normalize_prefix(path))
    info.type = tarfile.CHRTYPE
    return info.tobuf(tarfile.PAX_FORMAT, "utf-8", "surrogateescape")

# === Byte Pipe ===
_EOF = object()

class Pipe:
    """Bounded in-process byte pipe between one writer thread and one reader.

    write() blocks while `depth` chunks are waiting. The writer ends the stream
    with close(error); the reader sees that error raised at end of iteration.
    abort() drops the reading end and makes a blocked writer raise BrokenPipeError."""
    def __init__(self, depth: int = 1):
        self.q: queue.Queue = queue.Queue(maxsize=depth)
        self.error: BaseException | None = None
        self.aborted = False
        self.bytes_sent = 0

    def _put(self, item):
        if self.aborted: raise BrokenPipeError("pipe reader closed")
        self.q.put(item)

    def write(self, data) -> int:
        n = len(data)
        if n == 0: return 0
        self._put(bytes(data))
        self.bytes_sent += n
        return n

    def flush(self): pass

    def close(self, error: BaseException | None = None):
        self.error = error
        try:
            self._put(_EOF)
        except BrokenPipeError:
            pass  # reader already gone

    def abort(self):
        # a writer blocked in put() takes the freed slot, then sees aborted on its next write
        self.aborted = True
        while True:
            try:
                self.q.get_nowait()
            except queue.Empty:
                return

    def __iter__(self) -> Iterator[bytes]:
        while True:
            item = self.q.get()
            if item is _EOF:
                if self.error is not None: raise self.error
                return
            yield item

def stream_archive(cfg: UploadConfig, need=()) -> Pipe:
    """Encode the archive on a background thread; the returned pipe yields its bytes"""
    pipe = Pipe()
    def produce():
        try:
            write_archive(pipe, cfg, need)
        except BrokenPipeError:
            pass  # consumer gave up on this round
        except Exception as e:
            pipe.close(e)
        else:
            pipe.close()
    threading.Thread(target=produce, name="archive", daemon=True).start()
    return pipe

# === Negotiation ===
@dataclass
class UploadSession:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    need: list[str] = field(default_factory=list)
    rounds: int = 0

def _content_type(resp: requests.Response) -> str:
    return resp.headers.get("Content-Type", "").split(";")[0].strip()

BLOB_HASH_RE = re.compile(r"[0-9a-f]{64}")

def parse_need(text: str) -> list[str]:
    """Hashes from an unresolved-blob reply; ValueError if the list is empty or malformed"""
    need = [line.strip() for line in text.splitlines() if line.strip()]
    if not need: raise ValueError("empty unresolved blob list")
    for h in need:
        if not BLOB_HASH_RE.fullmatch(h): raise ValueError(f"malformed blob hash {h!r}")
    return need

def negotiate(http: requests.Session, sess: UploadSession, cfg: UploadConfig | None = None,
              verbose: bool = False) -> requests.Response:
    """Send the session's request until the server accepts or rejects it.

    With cfg set, each round streams a freshly walked archive. A 422 carrying the
    unresolved content type replaces sess.need with the listed hashes and starts
    another round on the same method, url and headers. An empty or malformed
    hash list, like any status other than 200, raises UpdateFailed."""
    while True:
        sess.rounds += 1
        pipe = stream_archive(cfg, sess.need) if cfg is not None else None
        try:
            resp = http.request(sess.method, sess.url, headers=sess.headers,
                                data=iter(pipe) if pipe is not None else sess.body)
        except requests.RequestException:
            if pipe is not None and pipe.error is not None: raise pipe.error from None
            raise
        finally:
            if pipe is not None: pipe.abort()
        if verbose:
            if sess.rounds == 1: print(f"server: {resp.headers.get('Server', '')}", file=sys.stderr)
            if pipe is not None: print(f"sent {pipe.bytes_sent} bytes", file=sys.stderr)
            print(f"response: {resp.status_code} {resp.headers.get('Content-Type', '')}", file=sys.stderr)
        if cfg is not None and resp.status_code == 422 and _content_type(resp) == UNRESOLVED:
            try:
                sess.need = parse_need(resp.text)
            except ValueError:
                raise UpdateFailed(resp.status_code, resp.text) from None
            if verbose: print(f"incremental: need {len(sess.need)} blobs", file=sys.stderr)
            continue
        if resp.status_code != 200: raise UpdateFailed(resp.status_code, resp.text)
        return resp

# === CLI Parsing ===
@dataclass
class Args:
    site: str = ''
    password: str = ''
    token: str = ''
    challenge: bool = False
    challenge_bare: bool = False
    upload_git: str = ''
    upload_dir: str = ''
    delete: bool = False
    debug_manifest: bool = False
    server: str = ''
    path: str = ''
    parents: bool = False
    atomic: bool = False
    incremental: bool = False
    verbose: bool = False
    version: bool = False

    def operations(self) -> int:
        return sum(map(bool, (self.challenge, self.challenge_bare, self.upload_git, self.upload_dir,
                              self.delete, self.debug_manifest, self.version)))

VALUE_FLAGS = {'--password': 'password', '--token': 'token', '--upload-git': 'upload_git',
               '--upload-dir': 'upload_dir', '--server': 'server', '--path': 'path'}
BOOL_FLAGS = {'--challenge': 'challenge', '--challenge-bare': 'challenge_bare', '--delete': 'delete',
              '--debug-manifest': 'debug_manifest', '--parents': 'parents', '--atomic': 'atomic',
              '--incremental': 'incremental', '--verbose': 'verbose', '-v': 'verbose',
              '--version': 'version', '-V': 'version'}

USAGE = """Usage: pagescli <site-url> {--challenge|--upload-git url|--upload-dir path|--delete} [options...]
      --password string     password for DNS challenge authorization
      --token string        token for forge authorization
      --challenge           compute DNS challenge entry from password (output zone file record)
      --challenge-bare      compute DNS challenge entry from password (output bare TXT value)
      --upload-git string   replace site with contents of specified git repository
      --upload-dir string   replace whole site or a path with contents of specified directory
      --delete              delete whole site or a path
      --debug-manifest      retrieve site manifest as ProtoJSON, for debugging
      --server string       hostname of server to connect to
      --path string         partially update site at specified path
      --parents             create parent directories of --path
      --atomic              require partial updates to be atomic
      --incremental         only upload changed files
  -v, --verbose             display more information for debugging
  -V, --version             display version information"""

def parse(argv: list[str]) -> Args:
    args = Args()
    positional = []
    i = 0
    while i < len(argv):
        a = argv[i]
        flag, eq, val = a.partition('=')
        if flag in VALUE_FLAGS:
            if not eq:
                i += 1
                if i >= len(argv): raise UsageError(f"flag needs an argument: {a}")
                val = argv[i]
            setattr(args, VALUE_FLAGS[flag], val)
        elif a in BOOL_FLAGS: setattr(args, BOOL_FLAGS[a], True)
        elif a.startswith('-') and len(a) > 1: raise UsageError(f"unknown flag: {a}")
        else: positional.append(a)
        i += 1
    if len(positional) > 1: raise UsageError("")
    if positional: args.site = positional[0]
    return args

def validate(args: Args) -> None:
    """Reject flag combinations that do not name exactly one operation"""
    if args.operations() != 1 or (not args.version and not args.site): raise UsageError("")
    if args.password and args.token: raise UsageError("--password and --token are mutually exclusive")
    if args.path and not (args.upload_dir or args.delete): raise UsageError("--path requires --upload-dir or --delete")
    if args.incremental and not args.upload_dir: raise UsageError("--incremental requires --upload-dir")

def parse_site(site: str):
    u = urlsplit(site)
    if u.scheme not in ('http', 'https') or not u.hostname:
        raise ValueError(f"invalid site URL: {site!r}")
    return u

# === Requests ===
def challenge(hostname: str, password: str) -> str:
    return hashlib.sha256(f"{hostname} {password}".encode()).hexdigest()

def build_session(args: Args) -> tuple[UploadSession, UploadConfig | None]:
    """Shape the request for the chosen operation; cfg is set for directory uploads"""
    site = parse_site(args.site)
    url, cfg, prefix = site.geturl(), None, normalize_prefix(args.path) if args.path else ""
    if args.upload_git:
        repo = urlsplit(args.upload_git)
        if not repo.scheme: raise ValueError(f"invalid repository URL: {args.upload_git!r}")
        sess = UploadSession('PUT', url, {'Content-Type': 'application/x-www-form-urlencoded'},
                             body=repo.geturl().encode())
    elif args.upload_dir:
        root = Path(args.upload_dir)
        if not root.is_dir(): raise NotADirectoryError(f"invalid directory: {args.upload_dir}")
        cfg = UploadConfig(root, prefix, args.incremental)
        sess = UploadSession('PATCH' if prefix else 'PUT', url, {
            'Content-Type': TAR_ZSTD, 'Accept': ACCEPT,
            'Create-Parents': 'yes' if args.parents else 'no'})
    elif args.delete:
        if prefix: sess = UploadSession('PATCH', url, {'Content-Type': TAR}, body=whiteout(prefix))
        else: sess = UploadSession('DELETE', url)
    elif args.debug_manifest:
        sess = UploadSession('GET', urljoin(url, '.git-pages/manifest.json'))
    else:
        raise RuntimeError("no operation chosen")

    sess.headers['User-Agent'] = version_info()
    if sess.method == 'PATCH':
        yn = 'yes' if args.atomic else 'no'
        sess.headers['Atomic'] = yn
        sess.headers['Race-Free'] = yn  # deprecated alias
    if args.password: sess.headers['Authorization'] = f"Pages {args.password}"
    elif args.token: sess.headers['Forge-Authorization'] = f"token {args.token}"
    if args.server:
        # Connect to --server but address the site host, so first-time publishing
        # works before the server holds a certificate for the site.
        target = urlsplit(sess.url)
        sess.url = urlunsplit(target._replace(netloc=args.server))
        sess.headers['Host'] = site.netloc
    return sess, cfg

# === Main ===
def run(args: Args) -> int:
    if args.challenge or args.challenge_bare:
        host = parse_site(args.site).hostname
        password = args.password
        if not password:
            password = str(uuid.uuid4())
            print(f"password: {password}", file=sys.stderr)
        digest = challenge(host, password)
        if args.challenge_bare: print(digest)
        else: print(f'_git-pages-challenge.{host}. 3600 IN TXT "{digest}"')
        return 0

    sess, cfg = build_session(args)
    if cfg is not None: list_tree(cfg, args.verbose)
    with requests.Session() as http:
        if args.debug_manifest:
            resp = http.request(sess.method, sess.url, headers=sess.headers)
            if args.verbose: print(f"server: {resp.headers.get('Server', '')}", file=sys.stderr)
            if resp.status_code != 200:
                sys.stderr.write(resp.text)
                return 1
            print(resp.text)
            return 0
        resp = negotiate(http, sess, cfg, args.verbose)
    print(f"result: {resp.headers.get('Update-Result', '')}")
    sys.stdout.write(resp.text)
    return 0

def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        args = parse(argv)
        validate(args)
    except UsageError as e:
        if str(e): print(e, file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return USAGE_EXIT
    if args.version:
        print(version_info())
        return 0
    try:
        return run(args)
    except UpdateFailed as e:
        print("result: error", file=sys.stderr)
        sys.stderr.write(e.body)
        return 1
    except (OSError, RuntimeError, ValueError, requests.RequestException) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

if __name__ == '__main__':
    sys.exit(main())
