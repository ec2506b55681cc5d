#!/usr/bin/env python3
import io
import os
import sys
import stat
import socket
import logging
import argparse
import mimetypes
import zipfile
from dataclasses import dataclass
from pathlib import Path

from flask import (
    Flask,
    request,
    redirect,
    send_file,
    url_for,
)
from werkzeug.exceptions import RequestEntityTooLarge

UPLOAD_KEYWORD = "upload"
DEFAULT_PORT = 8003
DEFAULT_MAX_MB = 32

# Served in the browser instead of offered as a download
INLINE_EXTENSIONS = {".html", ".htm", ".css", ".js"}

# the primary handler answers every method, like a bare root handler
ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class SetupError(Exception):
    """Startup failure; nothing is served."""


class UploadError(Exception):
    """A single upload request could not be stored."""


# ----------------------------
# Serve targets
# ----------------------------

@dataclass(frozen=True)
class FileTarget:
    path: Path


@dataclass(frozen=True)
class DirectoryTarget:
    path: Path


@dataclass(frozen=True)
class LiteralTarget:
    text: str


@dataclass(frozen=True)
class UploadTarget:
    directory: Path


ServeTarget = FileTarget | DirectoryTarget | LiteralTarget | UploadTarget


def read_piped_input(stream) -> str:
    """
    Return everything piped into ``stream``, or "" when nothing is piped.
    The descriptor is probed first so an interactive terminal never blocks.
    """
    if stream is None:
        # no stdin at all, e.g. started with it closed
        return ""
    try:
        st = os.fstat(stream.fileno())
    except io.UnsupportedOperation:
        # in-memory stream, nothing to block on
        st = None
    except OSError as e:
        raise SetupError(f"cannot inspect standard input: {e}") from e

    if st is not None:
        if stream.isatty():
            return ""
        piped = stat.S_ISFIFO(st.st_mode) or (stat.S_ISREG(st.st_mode) and st.st_size > 0)
        if not piped:
            return ""

    try:
        return stream.read()
    except (OSError, UnicodeDecodeError) as e:
        raise SetupError(f"cannot read standard input: {e}") from e


def select_target(words: list[str], upload_dir: Path, stdin=None) -> ServeTarget:
    if len(words) == 1:
        word = words[0]
        if word == UPLOAD_KEYWORD:
            return UploadTarget(upload_dir)
        path = Path(word)
        if path.exists():
            if path.is_dir():
                return DirectoryTarget(path)
            return FileTarget(path)

    text = " ".join(words)
    text += read_piped_input(stdin)
    return LiteralTarget(text)


# ----------------------------
# Archiver
# ----------------------------

def _raise_walk_error(err: OSError) -> None:
    raise err


def build_archive(root: Path) -> bytes:
    """
    Zip the tree under ``root`` into memory and return the finished archive.

    Symlinked directories are followed; a link back to one of its own
    ancestors is stored as an empty directory entry instead of being walked.
    """
    root = Path(root)
    if not root.is_dir():
        raise SetupError(f"not a directory: {root}")

    top = os.fspath(root)
    ancestors = {top: frozenset([os.path.realpath(top)])}
    buf = io.BytesIO()
    try:
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False) as zf:
            for dirpath, dirnames, filenames in os.walk(top, onerror=_raise_walk_error, followlinks=True):
                seen = ancestors.pop(dirpath)
                rel_dir = os.path.relpath(dirpath, top)
                if rel_dir != ".":
                    # stored with a trailing slash, keeping mtime and mode
                    zf.write(dirpath, rel_dir)
                for name in list(dirnames):
                    child = os.path.join(dirpath, name)
                    real = os.path.realpath(child)
                    if real in seen:
                        dirnames.remove(name)
                        zf.write(child, os.path.relpath(child, top))
                    else:
                        ancestors[child] = seen | {real}
                for name in filenames:
                    path = os.path.join(dirpath, name)
                    zf.write(path, os.path.relpath(path, top), compress_type=zipfile.ZIP_DEFLATED)
    except OSError as e:
        raise SetupError(f"cannot archive {root}: {e}") from e
    return buf.getvalue()


# ----------------------------
# Upload helpers
# ----------------------------

def sanitize_filename(raw_name: str) -> str:
    """Keep only the last path component of a client supplied filename."""
    base = raw_name.replace("\\", "/").rsplit("/", 1)[-1]
    if base in ("", ".", "..") or "\0" in base:
        raise UploadError(f"invalid filename: {raw_name!r}")
    return base


def ensure_within_dir(base_dir: Path, target: Path) -> None:
    base_dir = base_dir.resolve()
    target = target.resolve()
    if base_dir not in target.parents:
        raise UploadError(f"{target} escapes {base_dir}")


def store_upload(upload_dir: Path, raw_name: str, data_stream) -> Path:
    dest = upload_dir / sanitize_filename(raw_name)
    ensure_within_dir(upload_dir, dest)

    tmp = dest.with_name(dest.name + ".part")
    try:
        with open(tmp, "wb") as out:
            for chunk in iter(lambda: data_stream.read(1024 * 1024), b""):
                out.write(chunk)
        os.replace(tmp, dest)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise UploadError(f"cannot write {dest}: {e}") from e
    return dest


def download_name_for(path: Path) -> str:
    name = path.name
    if not name or name in (".", ".."):
        name = path.resolve().name
    return name


# ----------------------------
# Upload landing page
# ----------------------------

UPLOAD_HTML = r'''<!doctype html>
<html>
<head>
    <title>Upload</title>
    <style>
        body { font-family: Arial; margin: 40px; }
        .upload-area {
            width: 300px;
            height: 200px;
            border: 2px dashed #ccc;
            border-radius: 20px;
            text-align: center;
            padding: 30px;
            font-size: 16px;
            color: #999;
            margin-bottom: 20px;
        }
        .upload-area.dragover {
            background-color: #eef;
            border-color: #00f;
            color: #00f;
        }
        #fileInput { display: none; }
        textarea { width: 360px; height: 140px; }
    </style>
</head>
<body>
<h1>Send a file</h1>
<div class="upload-area" id="uploadArea">
    Drag and drop a file here<br>or click to select a file
</div>
<form method="post" action="/upload" enctype="multipart/form-data">
    <input id="fileInput" type="file" name="file" onchange="this.form.submit()">
</form>

<h2>Send text</h2>
<form method="post" action="/upload-text">
    <textarea name="text"></textarea><br>
    <button type="submit">Send</button>
</form>

<script>
    const uploadArea = document.getElementById('uploadArea');
    const fileInput = document.getElementById('fileInput');

    uploadArea.addEventListener('click', () => fileInput.click());
    uploadArea.addEventListener('dragover', (e) => {
        e.preventDefault();
        uploadArea.classList.add('dragover');
    });
    uploadArea.addEventListener('dragleave', () => {
        uploadArea.classList.remove('dragover');
    });
    uploadArea.addEventListener('drop', (e) => {
        e.preventDefault();
        uploadArea.classList.remove('dragover');
        const dt = new DataTransfer();
        dt.items.add(e.dataTransfer.files[0]);
        fileInput.files = dt.files;
        fileInput.dispatchEvent(new Event('change'));
    });
</script>
</body>
</html>
'''


# ----------------------------
# Flask app
# ----------------------------

def _route_everything(app: Flask, view, endpoint: str) -> None:
    app.add_url_rule("/", endpoint=endpoint, view_func=view, methods=ALL_METHODS)
    app.add_url_rule("/<path:subpath>", endpoint=endpoint, view_func=view, methods=ALL_METHODS)


def _install_file(app: Flask, path: Path) -> None:
    extension = path.suffix.lower()
    mimetype = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    inline = extension in INLINE_EXTENSIONS

    def serve_file(subpath=None):
        try:
            f = open(path, "rb")
        except OSError as e:
            app.logger.warning("Cannot open %s: %s", path, e)
            return "", 500
        # no ranges, no etags: the whole body every time
        return send_file(
            f,
            mimetype=mimetype,
            as_attachment=not inline,
            download_name=None if inline else path.name,
            conditional=False,
            etag=False,
        )

    _route_everything(app, serve_file, "serve_file")


def _install_directory(app: Flask, path: Path) -> None:
    archive = build_archive(path)
    download_name = download_name_for(path) + ".zip"

    def serve_directory(subpath=None):
        return send_file(
            io.BytesIO(archive),
            mimetype="application/octet-stream",
            as_attachment=True,
            download_name=download_name,
            conditional=False,
            etag=False,
        )

    _route_everything(app, serve_directory, "serve_directory")


def _install_literal(app: Flask, text: str) -> None:
    def serve_string(subpath=None):
        return text

    _route_everything(app, serve_string, "serve_string")


def _install_upload(app: Flask, upload_dir: Path) -> None:
    try:
        upload_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as e:
        raise SetupError(f"cannot create upload directory {upload_dir}: {e}") from e

    def check_size() -> None:
        limit = app.config["MAX_CONTENT_LENGTH"]
        if request.content_length is not None and request.content_length > limit:
            raise RequestEntityTooLarge()

    def landing(subpath=None):
        return UPLOAD_HTML

    def receive_file():
        check_size()
        f = request.files.get("file")
        try:
            if f is None:
                raise UploadError("request has no 'file' field")
            dest = store_upload(upload_dir, f.filename or "", f.stream)
        except UploadError as e:
            app.logger.warning("Upload from %s failed: %s", request.remote_addr, e)
            return "", 500
        print(f"Uploaded ({request.remote_addr}): {f.filename} -> {dest}")
        return redirect(url_for("landing"), code=303)

    def receive_text():
        check_size()
        text = request.form.get("text", "")
        print(f"Received text: ```\n{text}\n```")
        return redirect(url_for("landing"), code=303)

    _route_everything(app, landing, "landing")
    app.add_url_rule("/upload", endpoint="receive_file", view_func=receive_file, methods=["POST"])
    app.add_url_rule("/upload-text", endpoint="receive_text", view_func=receive_text, methods=["POST"])


def create_app(target: ServeTarget, max_upload_bytes: int = DEFAULT_MAX_MB * 1024 * 1024) -> Flask:
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = max_upload_bytes

    @app.errorhandler(RequestEntityTooLarge)
    def too_large(e):
        app.logger.warning("Rejected %s %s: body over %d bytes", request.method, request.path, max_upload_bytes)
        return "", 500

    if isinstance(target, FileTarget):
        _install_file(app, target.path)
    elif isinstance(target, DirectoryTarget):
        _install_directory(app, target.path)
    elif isinstance(target, LiteralTarget):
        _install_literal(app, target.text)
    elif isinstance(target, UploadTarget):
        _install_upload(app, target.directory)
    else:
        raise TypeError(f"unknown serve target: {target!r}")

    return app


# ----------------------------
# Network info
# ----------------------------

def outbound_ip() -> str:
    """Address of the interface used for outbound traffic (no packets are sent)."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError as e:
        raise SetupError(f"cannot determine outbound IP: {e}") from e


def print_banner(target: ServeTarget, ip: str, port: int) -> None:
    base = f"http://{ip}:{port}"

    if isinstance(target, UploadTarget):
        print(f"Waiting for files (saving to {target.directory})")
    elif isinstance(target, LiteralTarget):
        print("Serving string")
    else:
        print("Serving", target.path)

    print(f"Serving on {ip}:{port}")

    if isinstance(target, UploadTarget):
        print("\ncurl (upload a file):")
        print(f'  curl -F "file=@./path/to/file.zip" "{base}/upload"')
        print("curl (send text):")
        print(f'  curl --data-urlencode "text=hello" "{base}/upload-text"')
    else:
        print(f"\nDownload: curl -OJ {base}/")
    print()


# ----------------------------
# Main CLI
# ----------------------------

def build_parser() -> argparse.ArgumentParser:
    # no -h and no abbreviations: anything unrecognised is text to serve
    parser = argparse.ArgumentParser(
        description="Share a file, a directory (zipped), a string, or receive uploads over HTTP.",
        usage="%(prog)s [--host HOST] [--port PORT] [--upload-dir DIR] [--max-mb MB] "
              f"[{UPLOAD_KEYWORD} | FILE | DIRECTORY | WORD ...]",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument("--help", action="help", help="Show this message and exit")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--upload-dir", default=UPLOAD_KEYWORD, help="Where 'upload' mode stores files")
    parser.add_argument("--max-mb", type=int, default=DEFAULT_MAX_MB, help="Max upload size (MiB)")
    return parser


def parse_command_line(argv: list[str] | None = None) -> tuple[argparse.Namespace, list[str]]:
    """Split options from the words that pick the serve mode, keeping word order."""
    return build_parser().parse_known_args(argv)


def main(argv: list[str] | None = None) -> None:
    args, words = parse_command_line(argv)
    if args.max_mb <= 0:
        raise SystemExit("Error: --max-mb must be positive")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    try:
        target = select_target(words, Path(args.upload_dir), stdin=sys.stdin)
        app = create_app(target, max_upload_bytes=args.max_mb * 1024 * 1024)
        ip = outbound_ip()
    except SetupError as e:
        raise SystemExit(f"Error: {e}")

    print_banner(target, ip, args.port)
    app.run(debug=False, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
