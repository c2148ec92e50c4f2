"""
Development guest endpoint.

Serves the guest side of the copy protocol and the stat endpoint over a local
directory, one subdirectory per instance. Useful for trying the client and
command line without a running service:

    guestcopy serve ./guests --port 8080
    GUESTCOPY_BASE_URL=http://127.0.0.1:8080 guestcopy cp ./file demo:/file
"""

import logging
import os
import posixpath
import stat
from typing import BinaryIO, List, Optional, Tuple

from fastapi import FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from .config import validate_instance_id
from .cp.paths import resolve
from .cp.protocol import (
    CHUNK_SIZE,
    Direction,
    EndMarker,
    EntryHeader,
    ErrorMessage,
    ResultMessage,
    TransferRequest,
    decode_message,
    decode_request,
    encode_message,
)
from .cp.walker import walk
from .errors import CopyError, PathTraversalError, ProtocolError

logger = logging.getLogger(__name__)

# Close code for rejected credentials (policy violation)
POLICY_VIOLATION = 1008


def create_app(root: str, api_key: str = "") -> FastAPI:
    """Build the app serving instances under root.

    Args:
        root: Directory holding one subdirectory per instance
        api_key: Bearer token required from clients; empty disables auth
    """
    app = FastAPI(title="guestcopy development guest")
    root = os.path.abspath(root)

    def authorized(authorization: Optional[str]) -> bool:
        return not api_key or authorization == f"Bearer {api_key}"

    def instance_root(instance_id: str) -> str:
        validate_instance_id(instance_id)
        path = os.path.join(root, instance_id)
        os.makedirs(path, exist_ok=True)
        return path

    @app.get("/instances/{instance_id}/stat")
    def stat_path(
        instance_id: str,
        path: str,
        follow_links: bool = False,
        authorization: Optional[str] = Header(None),
    ):
        if not authorized(authorization):
            raise HTTPException(status_code=401, detail="unauthorized")
        try:
            local = guest_to_local(instance_root(instance_id), path)
        except (ValueError, PathTraversalError) as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            st = os.stat(local) if follow_links else os.lstat(local)
        except FileNotFoundError:
            return {"exists": False}
        except OSError as e:
            return {"exists": False, "error": str(e)}

        info = {
            "exists": True,
            "is_dir": stat.S_ISDIR(st.st_mode),
            "is_file": stat.S_ISREG(st.st_mode),
            "is_symlink": stat.S_ISLNK(st.st_mode),
            "mode": stat.S_IMODE(st.st_mode),
            "size": st.st_size,
        }
        if info["is_symlink"]:
            info["link_target"] = os.readlink(local)
        return info

    @app.websocket("/instances/{instance_id}/cp")
    async def copy_endpoint(websocket: WebSocket, instance_id: str):
        if not authorized(websocket.headers.get("authorization")):
            logger.warning(f"Rejected copy connection for {instance_id}: bad credentials")
            await websocket.close(code=POLICY_VIOLATION)
            return
        try:
            base = await run_in_threadpool(instance_root, instance_id)
        except ValueError as e:
            logger.warning(f"Rejected copy connection: {e}")
            await websocket.close(code=POLICY_VIOLATION)
            return

        await websocket.accept()
        try:
            request = decode_request(await _receive_text(websocket))
            if request.direction == Direction.TO.value:
                await _receive_entry(websocket, base, request)
            else:
                await _send_tree(websocket, base, request)
        except WebSocketDisconnect:
            logger.debug(f"Client disconnected from {instance_id}")
            return
        except (CopyError, OSError) as e:
            logger.error(f"Copy on {instance_id} failed: {e}")
            path = getattr(e, "path", "") or getattr(e, "filename", "") or ""
            await websocket.send_text(encode_message(ErrorMessage(str(e), str(path))))

        await websocket.close()

    return app


def guest_to_local(base: str, guest_path: str) -> str:
    """Map an absolute guest path onto the instance directory."""
    return resolve(base, guest_path.lstrip("/"))


async def _receive_frame(websocket: WebSocket) -> dict:
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    return message


async def _receive_text(websocket: WebSocket) -> str:
    message = await _receive_frame(websocket)
    if message.get("text") is None:
        raise ProtocolError("expected text frame")
    return message["text"]


# Filesystem work runs in the threadpool; the handlers only await frames.


async def _receive_entry(websocket: WebSocket, base: str, request: TransferRequest):
    """Write one entry sent by the client, then report the result."""
    local = guest_to_local(base, request.guest_path)
    logger.debug(f"Receiving {request.guest_path} -> {local} (dir={request.is_dir})")

    written = 0
    if request.is_dir:
        await run_in_threadpool(os.makedirs, local, exist_ok=True)
        await _expect_end(websocket)
    else:
        f = await run_in_threadpool(_open_upload, local)
        try:
            while True:
                message = await _receive_frame(websocket)
                if message.get("bytes") is not None:
                    await run_in_threadpool(f.write, message["bytes"])
                    written += len(message["bytes"])
                    continue
                msg = decode_message(message["text"])
                if isinstance(msg, EndMarker):
                    break
                raise ProtocolError(f"unexpected {type(msg).__name__} during upload")
        finally:
            await run_in_threadpool(f.close)

    await run_in_threadpool(_apply_metadata, local, request)
    await websocket.send_text(encode_message(ResultMessage(True, bytes_written=written)))


async def _expect_end(websocket: WebSocket):
    message = await _receive_frame(websocket)
    if message.get("text") is None:
        raise ProtocolError("unexpected binary frame for a directory")
    msg = decode_message(message["text"])
    if not isinstance(msg, EndMarker):
        raise ProtocolError(f"unexpected {type(msg).__name__} for a directory")


def _open_upload(local: str) -> BinaryIO:
    os.makedirs(os.path.dirname(local), exist_ok=True)
    return open(local, "wb")


def _apply_metadata(local: str, request: TransferRequest):
    if request.mode:
        os.chmod(local, request.mode & 0o7777)
    if request.mtime:
        try:
            os.utime(local, (request.mtime, request.mtime))
        except (OSError, OverflowError, ValueError) as e:
            logger.warning(f"Could not set mtime of {local}: {e}")
    if (request.uid or request.gid) and hasattr(os, "chown"):
        try:
            os.chown(local, request.uid, request.gid)
        except (OSError, OverflowError, ValueError) as e:
            logger.warning(f"Could not set ownership of {local}: {e}")


async def _send_tree(websocket: WebSocket, base: str, request: TransferRequest):
    """Stream a file or directory tree to the client."""
    local = guest_to_local(base, request.guest_path)
    name = posixpath.basename(request.guest_path.rstrip("/"))
    try:
        headers = await run_in_threadpool(_collect_tree, local, name, request.follow_links)
    except FileNotFoundError:
        await websocket.send_text(
            encode_message(ErrorMessage("path not found", request.guest_path))
        )
        return

    for path, header in headers:
        await _send_entry(websocket, path, header)

    await websocket.send_text(encode_message(EndMarker(final=True)))


def _collect_tree(local: str, name: str, follow_links: bool) -> List[Tuple[str, EntryHeader]]:
    """Headers for local and, if it is a directory, everything under it."""
    st = os.stat(local) if follow_links else os.lstat(local)
    headers = [(local, _entry_header(local, name, st))]

    if stat.S_ISDIR(st.st_mode):
        for entry in walk(local, follow_links):
            rel = posixpath.join(name, entry.rel_path) if name else entry.rel_path
            followed = entry.is_symlink and follow_links
            entry_st = os.stat(entry.path) if followed else os.lstat(entry.path)
            headers.append((entry.path, _entry_header(entry.path, rel, entry_st)))
    return headers


def _entry_header(local: str, rel: str, st: os.stat_result) -> EntryHeader:
    is_dir = stat.S_ISDIR(st.st_mode)
    is_symlink = stat.S_ISLNK(st.st_mode)
    return EntryHeader(
        path=rel,
        mode=stat.S_IMODE(st.st_mode),
        is_dir=is_dir,
        is_symlink=is_symlink,
        link_target=os.readlink(local) if is_symlink else "",
        size=st.st_size if not (is_dir or is_symlink) else 0,
        mtime=int(st.st_mtime),
        uid=st.st_uid,
        gid=st.st_gid,
    )


async def _send_entry(websocket: WebSocket, local: str, header: EntryHeader):
    await websocket.send_text(encode_message(header))

    if header.is_dir:
        await websocket.send_text(encode_message(ResultMessage(True)))
        return
    if not header.is_symlink:
        f = await run_in_threadpool(open, local, "rb")
        try:
            while True:
                chunk = await run_in_threadpool(f.read, CHUNK_SIZE)
                if not chunk:
                    break
                await websocket.send_bytes(chunk)
        finally:
            await run_in_threadpool(f.close)
    await websocket.send_text(encode_message(EndMarker()))
