import argparse
import base64
import json
import logging
import os
import sys
import termios
import threading
import tty

import uvicorn

from .client import HttpHostConnection
from .config import load_settings
from .errors import HostError, StreamError
from .transfer import download_file, upload_file

logger = logging.getLogger(__name__)


def console_client(stream_id, host, port):
    try:
        from websockets.sync.client import connect
    except ImportError:
        print("Error: 'websockets' library is required. Please install it.")
        return 1

    url = f"ws://{host}:{port}/api/streams/{stream_id}/console"

    try:
        with connect(url, open_timeout=30) as websocket:
            fd = sys.stdin.fileno()
            old_settings = termios.tcgetattr(fd)
            stop_event = threading.Event()

            def reader():
                try:
                    while not stop_event.is_set():
                        try:
                            message = websocket.recv()
                        except Exception:
                            break
                        # Output arrives base64 encoded
                        sys.stdout.buffer.write(base64.b64decode(message))
                        sys.stdout.buffer.flush()
                finally:
                    stop_event.set()
                    termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
                    os._exit(0)  # Unblock the stdin read in the main thread

            t = threading.Thread(target=reader, daemon=True)
            t.start()

            try:
                tty.setraw(fd)
                while not stop_event.is_set():
                    data = sys.stdin.buffer.read(1)
                    if not data:
                        break
                    websocket.send(json.dumps({
                        "type": "input",
                        "data": base64.b64encode(data).decode("utf-8"),
                    }))
            finally:
                termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
                stop_event.set()
    except Exception as e:
        print(f"Connection failed: {e}")
        if hasattr(e, "reason"):
            print(f"Close reason: {e.reason}")
        return 1
    return 0


def _connect(args) -> HttpHostConnection:
    return HttpHostConnection(f"http://{args.host}:{args.port}")


def cmd_pipe(args):
    conn = _connect(args)
    try:
        ids = conn.open_pipe(nonblocking=args.nonblocking)
    finally:
        conn.close()
    print(" ".join(ids))
    return 0


def cmd_upload(args, settings):
    conn = _connect(args)
    try:
        with conn.attach(args.stream_id) as channel:
            result = upload_file(channel, args.file, chunk_size=settings.chunk_size)
    finally:
        conn.close()
    print(f"Uploaded {result.size} bytes (md5 {result.checksum})")
    return 0


def cmd_download(args, settings):
    conn = _connect(args)
    try:
        with conn.attach(args.stream_id) as channel:
            result = download_file(channel, args.output, chunk_size=settings.chunk_size)
    finally:
        conn.close()
    print(f"Downloaded {result.size} bytes to {result.path} (md5 {result.checksum})")
    return 0


def build_parser(settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="virtstream CLI")
    subparsers = parser.add_subparsers(dest="command")

    def add_target(p):
        p.add_argument("--host", type=str, default=settings.host, help="Server host")
        p.add_argument("--port", type=int, default=settings.port, help="Server port")

    serve_parser = subparsers.add_parser("serve", help="Serve loopback streams over HTTP")
    add_target(serve_parser)

    pipe_parser = subparsers.add_parser("pipe", help="Allocate a connected stream pair")
    pipe_parser.add_argument("--nonblocking", action="store_true", help="Open non-blocking streams")
    add_target(pipe_parser)

    upload_parser = subparsers.add_parser("upload", help="Send a file over a stream")
    upload_parser.add_argument("file", type=str, help="Local file to send")
    upload_parser.add_argument("stream_id", type=str, help="Stream ID")
    add_target(upload_parser)

    download_parser = subparsers.add_parser("download", help="Receive a stream into a file")
    download_parser.add_argument("stream_id", type=str, help="Stream ID")
    download_parser.add_argument("output", type=str, help="Output file path")
    add_target(download_parser)

    console_parser = subparsers.add_parser("console", help="Attach to a console stream")
    console_parser.add_argument("stream_id", type=str, help="Stream ID")
    add_target(console_parser)

    return parser


def main(argv=None):
    settings = load_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    parser = build_parser(settings)
    args = parser.parse_args(argv)

    try:
        if args.command == "serve":
            print(f"Serving streams at http://{args.host}:{args.port}")
            uvicorn.run("virtstream.server:app", host=args.host, port=args.port)
            return 0
        elif args.command == "pipe":
            return cmd_pipe(args)
        elif args.command == "upload":
            return cmd_upload(args, settings)
        elif args.command == "download":
            return cmd_download(args, settings)
        elif args.command == "console":
            return console_client(args.stream_id, args.host, args.port)
        else:
            parser.print_help()
            return 1
    except (StreamError, HostError, OSError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
