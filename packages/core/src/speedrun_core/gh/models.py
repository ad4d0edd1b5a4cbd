"""Pull request data returned by the gateway.

Every type round-trips through a plain dict so the gateway can store it in
the cache as JSON and rebuild it on a hit.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field


@dataclass
class PullRequest:
    owner: str
    repo: str
    number: int
    title: str
    updated_at: str = ""  # ISO-8601
    head_sha: str = ""  # refreshed whenever check status is fetched
    author: str = ""
    labels: list[str] = field(default_factory=list)
    body: str = ""
    html_url: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def identity(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> PullRequest:
        return cls(
            owner=data["owner"],
            repo=data["repo"],
            number=int(data["number"]),
            title=data.get("title", ""),
            updated_at=data.get("updated_at", ""),
            head_sha=data.get("head_sha", ""),
            author=data.get("author", ""),
            labels=list(data.get("labels") or []),
            body=data.get("body", ""),
            html_url=data.get("html_url", ""),
        )


@dataclass
class DiffStats:
    additions: int
    deletions: int
    files: int

    def is_valid(self) -> bool:
        return self.additions >= 0 and self.deletions >= 0 and self.files >= 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> DiffStats:
        return cls(additions=int(data["additions"]), deletions=int(data["deletions"]), files=int(data["files"]))


@dataclass
class CheckDetail:
    name: str
    status: str  # "success" | "failure" | "pending" | "error"
    description: str = ""
    url: str = ""


@dataclass
class CheckStatus:
    state: str  # "success" | "failure" | "pending" | "error"
    description: str
    details: list[CheckDetail] = field(default_factory=list)

    def is_valid(self) -> bool:
        return bool(self.state) and bool(self.description)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> CheckStatus:
        return cls(
            state=data.get("state", ""),
            description=data.get("description", ""),
            details=[CheckDetail(**d) for d in data.get("details") or []],
        )


@dataclass
class Review:
    state: str  # "APPROVED" | "CHANGES_REQUESTED" | "COMMENTED" | "DISMISSED" | ...
    user: str
    body: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Review:
        return cls(state=data["state"], user=data["user"], body=data.get("body", ""))
