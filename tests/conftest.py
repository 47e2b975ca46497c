import os

import pytest

PROGRAMS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'programs')


@pytest.fixture
def read_program():
    """Return a loader for the example assembly programs in tests/programs."""
    def read(name: str) -> str:
        with open(os.path.join(PROGRAMS_DIR, name), 'r') as f:
            return f.read()
    return read


@pytest.fixture
def program_path():
    def path(name: str) -> str:
        return os.path.join(PROGRAMS_DIR, name)
    return path
