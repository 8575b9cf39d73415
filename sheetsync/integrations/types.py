from dataclasses import dataclass


@dataclass
class SinkResult:
    target: str
    status: str
    message: str

    @property
    def ok(self) -> bool:
        return self.status == "ok"
