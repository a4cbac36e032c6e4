from pydantic import BaseModel, Field

from models.results import PipelineState


class PipelineEvent(BaseModel):
    """Emitted by the orchestrator at every state transition of one product run.

    The CLI logs these; a spreadsheet writer can put `status_line()` into the
    product's status cell.
    """

    article: str = ""
    state: PipelineState
    progress: float = Field(ge=0.0, le=1.0)
    message: str
    payload: dict | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (PipelineState.ASSEMBLED, PipelineState.FAILED)

    def status_line(self) -> str:
        first = self.message.splitlines()[0] if self.message else ""
        return f"[{self.progress:.0%}] {self.state.value}: {first}"
