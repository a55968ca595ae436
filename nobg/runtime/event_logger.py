import json
from pathlib import Path

from nobg.runtime.states import RunEvent


class RunEventLogger:
    """Appends state-transition events to ``run_events.jsonl`` in the run directory."""

    def __init__(self, run_dir: Path):
        self.log_path = Path(run_dir) / "run_events.jsonl"
        self.last_state = None
        self.log_path.touch(exist_ok=True)

    def __call__(self, event: RunEvent) -> None:
        self.log(event)

    def log(self, event: RunEvent) -> None:
        """Append an event only when the run state changes."""
        if event.type != "state" or event.state == self.last_state:
            return
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict()) + "\n")
        self.last_state = event.state
