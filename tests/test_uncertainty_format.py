import pytest

from sensible_bayes.util import format_uncertainty


@pytest.mark.parametrize(
    "x, err, expected",
    [
        (12.34567, 0.00123, "12.3457(12)"),
        (1.2367, 0.067, "1.24(7)"),
        (-0.123456, 0.000123, "-0.12346(12)"),
        (-0.0000123456, 0.0000001234, "-1.235(12)e-5"),
        (123456.0, 789.0, "1.235(8)e5"),
        (0.0, 0.3, "0.0(3)"),
        (1.7, 3.2, "2(3)"),
        (1.0, -0.1, "1.00(10)"),
        (1.0, 0.0, "1(0)"),
        (float("nan"), 1.0, "nan"),
        (1.0, float("inf"), "inf"),
    ],
)
def test_format_uncertainty(x, err, expected):
    assert format_uncertainty(x, err) == expected
