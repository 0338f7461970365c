"""WebSocket signaling client.

This is intentionally unaware of aiortc. It speaks the relay's JSON protocol
and turns inbound messages into transport events (see `transport.py`).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websockets
from pyee.asyncio import AsyncIOEventEmitter
from websockets.protocol import State

from . import protocol
from .transport import ENVELOPE, PARTICIPANT_JOINED, PARTICIPANT_LEFT, ROSTER, SIGNALING_ERROR


logger = logging.getLogger(__name__)


class SignalingClient(AsyncIOEventEmitter):
	def __init__(self, url: str, user_id: str, name: Optional[str] = None):
		super().__init__()
		self.url = url
		self.user_id = user_id
		self.name = name

		self._room_id: Optional[str] = None
		# websockets' connection types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._connected_evt = asyncio.Event()

	@property
	def room_id(self) -> Optional[str]:
		return self._room_id

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._ws.state is State.OPEN

	async def connect(self) -> None:
		if self._recv_task and not self._recv_task.done():
			return

		logger.info("signaling connect url=%s", self.url)
		try:
			self._ws = await websockets.connect(self.url)
		except Exception:
			logger.exception("signaling connect failed url=%s", self.url)
			self._emit_error("connect-failed", {"url": self.url})
			raise
		self._connected_evt.set()
		self._recv_task = asyncio.create_task(self._recv_loop(), name="signaling-recv")

	async def disconnect(self) -> None:
		logger.info("signaling disconnect")
		self._connected_evt.clear()
		if self._recv_task:
			self._recv_task.cancel()
			try:
				await self._recv_task
			except asyncio.CancelledError:
				pass
			self._recv_task = None

		if self._ws:
			try:
				await self._ws.close()
			except Exception:
				logger.debug("signaling close failed", exc_info=True)
		self._ws = None
		self._room_id = None

	async def join(self, room: str) -> None:
		self._room_id = room
		await self._send(protocol.make_join(room, self.user_id, self.name))

	async def leave(self) -> None:
		if not self._room_id:
			return
		room = self._room_id
		self._room_id = None
		await self._send(protocol.make_leave(room))

	async def send(self, envelope: protocol.SignalingEnvelope) -> None:
		await self._send(protocol.encode_envelope(envelope))

	async def _send(self, payload: Dict[str, Any]) -> None:
		if not self._connected_evt.is_set() or not self._ws:
			raise RuntimeError("Signaling not connected")
		mtype = payload.get("type")
		to_peer = payload.get("targetUserId")
		if mtype in (protocol.OFFER, protocol.ANSWER):
			logger.info("signaling send type=%s to=%s sdp_len=%s", mtype, to_peer, len(str(payload.get("sdp", ""))))
		elif mtype == protocol.ICE_CANDIDATE:
			logger.debug("signaling send type=ice to=%s", to_peer)
		else:
			logger.debug("signaling send type=%s", mtype)
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		async with self._send_lock:
			await self._ws.send(raw)

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except json.JSONDecodeError:
					self._emit_error("invalid-json", {"raw": raw})
					continue

				if not isinstance(msg, dict):
					self._emit_error("invalid-message", {"msg": msg})
					continue

				mtype = msg.get("type")
				if not isinstance(mtype, str):
					self._emit_error("missing-type", msg)
					continue

				if mtype == protocol.PING:
					await self._send(protocol.make_pong(msg.get("ts")))
					continue

				try:
					self._dispatch(mtype, msg)
				except protocol.ProtocolError as e:
					self._emit_error(e.message, msg)

		except asyncio.CancelledError:
			raise
		except Exception as e:
			logger.exception("signaling recv loop crashed")
			self._emit_error(f"recv-loop-exception: {e}", {})
		finally:
			self._connected_evt.clear()
			logger.debug("signaling recv loop stopped")
			if self._ws is ws:
				self._ws = None
			try:
				await ws.close()
			except Exception:
				logger.debug("signaling close failed", exc_info=True)

	def _dispatch(self, mtype: str, msg: Dict[str, Any]) -> None:
		if protocol.is_envelope_type(mtype):
			envelope = protocol.decode_envelope(msg, self._room_id or "", self.user_id)
			if envelope.kind is protocol.EnvelopeKind.ICE_CANDIDATE:
				logger.debug("signaling ice from=%s has_candidate=%s", envelope.sender_id, bool(envelope.candidate))
			else:
				logger.info("signaling %s from=%s sdp_len=%s", envelope.kind.value, envelope.sender_id, len(envelope.sdp or ""))
			self.emit(ENVELOPE, envelope)
			return

		if mtype == protocol.USERS_ONLINE:
			participants = protocol.parse_roster(msg)
			logger.info("signaling roster room=%s participants=%s", self._room_id, len(participants))
			self.emit(ROSTER, participants)
			return

		if mtype == protocol.USER_JOINED:
			record = protocol.parse_participant(msg)
			logger.info("signaling participant-joined participant_id=%s", record.participant_id)
			self.emit(PARTICIPANT_JOINED, record)
			return

		if mtype in protocol.USER_LEFT_TYPES:
			record = protocol.parse_participant(msg)
			logger.info("signaling participant-left participant_id=%s type=%s", record.participant_id, mtype)
			self.emit(PARTICIPANT_LEFT, record)
			return

		if mtype == protocol.ERROR:
			self._emit_error(str(msg.get("error", "error")), msg)
			return

		self._emit_error("unknown-type", msg)

	def _emit_error(self, error: str, payload: Dict[str, Any]) -> None:
		logger.warning("signaling error=%s", error)
		self.emit(SIGNALING_ERROR, error, payload)
