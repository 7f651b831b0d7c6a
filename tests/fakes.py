"""
Scripted provider doubles and canned payloads for pipeline tests.
"""

import asyncio
from collections.abc import Callable
from typing import Any

from listing_extractor.providers.base import ProviderClient


class FakeProvider(ProviderClient):
    """
    Replays a script of responses, then falls back to `default`.

    A script item may be a payload, an exception instance (raised) or a
    callable taking the request payload.
    """

    def __init__(self, name: str, default: Any = None, script: list[Any] | None = None):
        self.name = name
        self.default = default
        self.script = list(script or [])
        self.calls: list[dict[str, Any]] = []
        self.gate: asyncio.Event | None = None

    async def fetch(self, payload: dict[str, Any]) -> Any:
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(payload)
        return item


def no_sleep() -> Callable[[float], Any]:
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays
    return sleep


PLACE = {
    "title": "Four Seasons Resort Goa",
    "placeId": "X",
    "address": "Fort Aguada Road, Candolim, Goa",
    "city": "Candolim",
    "website": "https://fourseasons.example/goa",
    "phone": "+91 832 000 0000",
    "totalScore": 4.6,
    "reviewsCount": 1200,
    "price": "$$$$",
    "categoryName": "Resort hotel",
    "location": {"lat": 15.49, "lng": 73.77},
    "imageUrls": ["https://img.example/places-1.jpg"],
}

WEBSITE = {
    "markdown": "Welcome to Four Seasons Goa. Write to stay@fourseasons.example",
    "links": [
        "https://www.instagram.com/fsgoa",
        "https://fourseasons.example/goa/dining/menu",
    ],
    "metadata": {"description": "Beachfront resort in Candolim"},
}

WEB_RESULTS = {
    "results": [
        {"url": "https://www.facebook.com/fourseasonsgoa", "title": "Four Seasons Goa", "description": "Resort"},
        {"url": "https://travel.example/goa/four-seasons", "title": "Review", "description": "Great stay"},
    ]
}


def _web(payload: dict[str, Any]) -> dict[str, Any]:
    # The same provider serves page scrapes (by url) and searches (by query)
    return WEBSITE if "url" in payload else WEB_RESULTS


def hotel_payloads() -> dict[str, Any]:
    return {
        "places_search": {"results": [PLACE]},
        "web_search": _web,
        "room_search": {"rooms": [{"name": "Deluxe Sea View", "price": 320, "currency": "USD"}]},
        "social_search": {"instagram": {"url": "https://www.instagram.com/fsgoa"}, "tiktok": None},
        "places_reviews": {
            "reviews": [
                {"name": "Asha", "stars": 5, "text": "Wonderful stay by the beach"},
                {"name": "Tom", "stars": 4, "text": "Great food, slow check-in"},
            ],
            "rating": 4.5,
            "reviewsCount": 1100,
        },
        "tripadvisor": {"rating": 4.5, "reviews_count": 800, "url": "https://tripadvisor.example/fsgoa"},
        "booking_com": {"rating": 9.1, "reviews_count": 500, "url": "https://booking.example/fsgoa"},
        "image_fetch": {"images": ["https://img.example/hero.jpg", {"url": "https://img.example/pool.jpg", "alt": "Pool"}]},
        "ai_sentiment": {"summary": "Guests praise the beach and food", "score": 0.6},
        "ai_enhancement": {
            "description": "A beachfront resort in Candolim.",
            "short_description": "Beachfront luxury in North Goa",
            "meta_title": "Four Seasons Goa | Resort in Candolim",
            "faqs": [{"question": "Is there parking?", "answer": "Yes, free valet."}],
            "star_rating": 5,
            "contact_info": {"email": "stay@fourseasons.example"},
        },
    }


def make_providers(payloads: dict[str, Any]) -> dict[str, FakeProvider]:
    return {name: FakeProvider(name, default=payload) for name, payload in payloads.items()}


def total_calls(providers: dict[str, FakeProvider]) -> int:
    return sum(len(p.calls) for p in providers.values())
