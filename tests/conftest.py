"""
Shared pytest fixtures.
"""

import os
import shutil
import tempfile

import pytest

from fakes import PipelineHarness


@pytest.fixture
def temp_db():
    temp_dir = tempfile.mkdtemp()
    yield os.path.join(temp_dir, "test.db")
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def make_harness(temp_db):
    def _make(**kwargs):
        return PipelineHarness(temp_db, **kwargs)
    return _make
