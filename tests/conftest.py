"""pytest fixtures for iteration canvas tests."""

import pytest
import tempfile
from pathlib import Path

from iteration_canvas.core.errors import ListingFetchError
from iteration_canvas.core.listing import IterationRecord
from iteration_canvas.core.models import CanvasEdge, CanvasGraph, IterationNode, Position, RootNode
from iteration_canvas.core.scheduler import ManualScheduler
from iteration_canvas.core.session import CanvasSession


class MemoryListingSource:
    """listing source backed by a list. set fail to make fetches raise."""

    def __init__(self, records=None):
        self.records = list(records or [])
        self.fail = False
        self.calls = 0

    async def list_iterations(self):
        self.calls += 1
        if self.fail:
            raise ListingFetchError("listing unavailable")
        return list(self.records)


def record(component, index, parent_ref=None, source_ref=None):
    """IterationRecord for `Component.iteration-N.tsx`."""
    return IterationRecord(
        id=f"{component}.iteration-{index}.tsx",
        component_ref=component,
        iteration_index=index,
        parent_ref=parent_ref,
        source_ref=source_ref,
    )


@pytest.fixture
def temp_dir():
    """temporary directory that cleans up after test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def listing():
    return MemoryListingSource()


@pytest.fixture
def session():
    """empty canvas session."""
    return CanvasSession()


@pytest.fixture
def root_session():
    """session with one pricing-card root."""
    session = CanvasSession()
    session.place_root("pricing-card", Position(50, 50))
    return session


@pytest.fixture
def chain_graph():
    """root R with iterations A -> B -> C beneath it."""
    root = RootNode(id="node_1", component_id="pricing-card")
    a = IterationNode(id="PricingCard.iteration-1.tsx", parent_id="node_1", component_name="PricingCard", iteration_index=1)
    b = IterationNode(id="PricingCard.iteration-2.tsx", parent_id=a.id, component_name="PricingCard", iteration_index=2)
    c = IterationNode(id="PricingCard.iteration-3.tsx", parent_id=b.id, component_name="PricingCard", iteration_index=3)
    return CanvasGraph(
        nodes=(root, a, b, c),
        edges=(
            CanvasEdge(root.id, a.id),
            CanvasEdge(a.id, b.id),
            CanvasEdge(b.id, c.id),
        ),
    )
