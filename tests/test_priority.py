import pytest

from ratewatch.verification.service import (
    PENDING,
    VERIFIED,
    calculate_priority,
    ingest_target,
    rate_difference,
)


@pytest.mark.parametrize(
    "rank, source, verified, expected",
    [
        (1, None, None, 50),
        (10, None, None, 30),
        (50, None, None, 10),
        (51, None, None, 1),
        (51, 15.0, 10.0, 41),
        (51, 11.0, 10.0, 21),
        (51, 10.5, 10.0, 1),
        (3, 4.0, None, 50),
        (4, 4.0, 4.0, 30),
        (2, 10.0, 4.0, 90),
        (20, 5.0, 4.0, 30),
        (51, 4.5, 4.0, 1),
        (10, 2.0, 6.9, 50),
    ],
)
def test_calculate_priority(rank, source, verified, expected):
    assert calculate_priority(rank, source, verified) == expected


def test_priority_band_edges():
    assert calculate_priority(50, None, None) == 10
    assert calculate_priority(51, None, None) == 1
    assert calculate_priority(5, 1.0, 6.0) == 70


def test_ingest_target():
    assert ingest_target(4.0, None) == (PENDING, False)
    assert ingest_target(4.0, 4.5) == (VERIFIED, False)
    assert ingest_target(4.0, 5.0) == (PENDING, True)
    assert ingest_target(None, 5.0) == (VERIFIED, False)


def test_rate_difference():
    assert rate_difference(7.0, 5.0) == 2.0
    assert rate_difference(5.0, 5.25) == -0.25
    assert rate_difference(None, 4.0) is None
    assert rate_difference(5.0, None) is None
