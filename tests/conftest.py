import logging
from typing import List

import pytest
import torch

from patchinfer.inference import ModelExecutor


class Doubler(ModelExecutor):
    """Multiplies its inputs by 2 and remembers the patches it has seen."""
    model_id = 'doubler'

    def __init__(self, out_dtype=None, loaded=True):
        self.out_dtype = out_dtype
        self.loaded = loaded
        self.inputs: List[torch.Tensor] = []

    @property
    def is_loaded(self) -> bool:
        return self.loaded

    def execute(self, inp: torch.Tensor) -> torch.Tensor:
        self.inputs.append(inp.clone())
        out = inp.to(torch.float64) * 2
        if self.out_dtype is not None:
            out = out.to(self.out_dtype)
        return out


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records: List[logging.LogRecord] = []

    def emit(self, record):
        self.records.append(record)

    @property
    def messages(self) -> List[str]:
        return [r.getMessage() for r in self.records]


@pytest.fixture
def doubler():
    return Doubler()


@pytest.fixture
def log_records():
    # The package logger doesn't propagate, so caplog can't see its records.
    handler = ListHandler()
    logger = logging.getLogger('patchinferlog')
    logger.addHandler(handler)
    yield handler
    logger.removeHandler(handler)
