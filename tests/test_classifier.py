import pytest

from gerber2stencil import DRILL_SIZES, Aperture, DrillClassifier, Position


def aperture(size, *positions):
    a = Aperture("D10", size)
    a.positions.extend(Position(x, y) for x, y in positions)
    return a


@pytest.mark.parametrize("size, expected", [
    (0.5, 0.5),
    (0.54, 0.5),
    (0.56, 0.6),
    (0.1, 0.3),
    (0.0001, 0.3),
    (2.5, 1.2),
    (1.16, 1.2),
])
def test_nearest_drill_is_selected(size, expected):
    assert DrillClassifier().bin_for(size).size == expected


@pytest.mark.parametrize("lower", DRILL_SIZES[:-1])
def test_midpoint_goes_to_smaller_drill(lower):
    assert DrillClassifier().bin_for(lower + 0.05).size == lower


def test_catalog_has_ten_ascending_sizes():
    sizes = [drill.size for drill in DrillClassifier().bins]

    assert sizes == sorted(sizes)
    assert len(sizes) == 10
    assert sizes[0] == 0.3 and sizes[-1] == 1.2


def test_classify_collects_positions_in_order():
    classifier = DrillClassifier()
    bins = classifier.classify([
        aperture(0.48, (1, 1), (2, 2)),
        aperture(0.52, (3, 3)),
        aperture(1.0, (4, 4)),
    ])

    by_size = {drill.size: drill for drill in bins}
    assert by_size[0.5].positions == [Position(1, 1), Position(2, 2), Position(3, 3)]
    assert by_size[1.0].positions == [Position(4, 4)]
    assert sum(len(drill.positions) for drill in bins) == 4


def test_custom_catalog():
    classifier = DrillClassifier([0.8, 1.6])

    assert classifier.categorize(aperture(1.1, (0, 0))).size == 0.8
    assert classifier.categorize(aperture(1.3, (0, 0))).size == 1.6


def test_summary_lists_only_used_drills():
    classifier = DrillClassifier()
    assert classifier.summary() == "  no holes"

    classifier.classify([aperture(0.7, (0, 0), (1, 0))])
    assert classifier.summary() == "  0.7 mm: 2 holes"
