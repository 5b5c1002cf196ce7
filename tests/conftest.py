import os
import sys
from datetime import date

import pytest

# Project root, so ``api`` imports as a package without an install.
_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _root not in sys.path:
    sys.path.insert(0, _root)

from api.itinerary import TripContext


@pytest.fixture
def cairo_context():
    return TripContext(
        destination="Cairo, Egypt",
        country="United Arab Emirates",
        start_date=date(2026, 3, 1),
        end_date=date(2026, 3, 4),
        home_iso="AED",
        dest_iso="EGP",
        fx={
            "base": "AED",
            "quote": "EGP",
            "rate": 13.25,
            "inverse": 0.075472,
            "date": "2026-02-27",
            "provider": "primary",
            "source": "exchangerate.host",
            "note": "exchangerate.host · 2026-02-27",
        },
        weather="Next 5 days: mostly sunny, 14-27°C.",
        interests=["history", "food"],
    )


@pytest.fixture
def trip_form():
    return {
        "destination": "Cairo, Egypt",
        "country": "United Arab Emirates",
        "dateRange": {"from": "2026-03-01T00:00:00.000Z", "to": "2026-03-04T00:00:00.000Z"},
        "dailyBudget": 150,
        "groupType": "couple",
        "travelVibe": "relaxed",
        "interests": ["history", "food"],
        "dietary": "none",
        "accommodation": "mid-range hotel",
        "transportPref": "taxi",
        "occasion": "anniversary",
    }
