import numpy as np
import pytest

METRIC_FORMAT = "G04 Gerber Fmt 4.6, Leading zero omitted, Abs format (unit mm)*"
IMPERIAL_FORMAT = "G04 Gerber Fmt 3.4, Leading zero omitted, Abs format (unit in)*"


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def write_gerber(tmp_path):
    def _write(name, *lines):
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n")
        return path
    return _write
