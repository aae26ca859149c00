"""Lightweight shared DTOs for the signaling document schema."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """협상에서의 역할. 입장 순서로 결정되며 사용자 신원과 무관합니다."""

    UNDECIDED = "undecided"
    OFFERING = "offering"
    ANSWERING = "answering"

    @property
    def candidate_log(self) -> str:
        """이 역할이 후보를 기록하는 로그 이름."""
        if self is Role.OFFERING:
            return "offerCandidates"
        if self is Role.ANSWERING:
            return "answerCandidates"
        raise ValueError("undecided role has no candidate log")

    @property
    def peer(self) -> "Role":
        """상대 역할."""
        if self is Role.OFFERING:
            return Role.ANSWERING
        if self is Role.ANSWERING:
            return Role.OFFERING
        raise ValueError("undecided role has no peer role")


class SessionDescription(BaseModel):
    """SDP offer/answer ({type, sdp})."""

    model_config = ConfigDict(frozen=True)

    type: str
    sdp: str


class Room(BaseModel):
    """rooms/{roomId} 문서."""

    room_id: str
    offer: Optional[SessionDescription] = None
    answer: Optional[SessionDescription] = None
    participants: List[str] = Field(default_factory=list)

    @property
    def is_negotiated(self) -> bool:
        return self.offer is not None and self.answer is not None

    def to_document(self) -> dict:
        """저장소 스키마 형태의 dict (roomId 제외)."""
        doc: dict = {"participants": list(self.participants)}
        if self.offer is not None:
            doc["offer"] = self.offer.model_dump()
        if self.answer is not None:
            doc["answer"] = self.answer.model_dump()
        return doc


class IceCandidate(BaseModel):
    """RTCIceCandidate.toJSON() 형식의 후보 payload."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")
    username_fragment: Optional[str] = Field(default=None, alias="usernameFragment")

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


class CandidateRecord(BaseModel):
    """후보 로그의 한 레코드. 생성 후 변경되지 않습니다."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    role: Role
    sender_id: str
    candidate: IceCandidate
