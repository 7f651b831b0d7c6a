"""
Pure mapping functions and input builders shared by the step registries.

Mappers turn one provider payload into a partial set of canonical draft
fields. Input builders turn the seed, the draft and earlier raw outputs into
the payload for the next provider call. Neither performs I/O.
"""

import math
import re
from collections.abc import Iterable, Mapping
from typing import Any

from listing_extractor.core.exceptions import MappingError

MAX_REVIEWS = 50
MAX_WEBSITE_TEXT = 20_000

SOCIAL_DOMAINS = {
    "instagram": ("instagram.com/",),
    "facebook": ("facebook.com/", "fb.com/"),
    "twitter": ("twitter.com/", "x.com/"),
    "tiktok": ("tiktok.com/@",),
    "youtube": ("youtube.com/", "youtu.be/"),
}

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_SLUG_RE = re.compile(r"[^a-z0-9]+")

# Known areas -> neighborhood ids
AREAS = {
    "Agonda": "agonda", "Anjuna": "anjuna", "Arambol": "arambol", "Ashwem": "ashwem",
    "Assagao": "assagao", "Baga": "baga", "Benaulim": "benaulim", "Bogmalo": "bogmalo",
    "Calangute": "calangute", "Canacona": "canacona", "Candolim": "candolim",
    "Cavelossim": "cavelossim", "Colva": "colva", "Dona Paula": "dona-paula",
    "Madgaon": "madgaon", "Majorda": "majorda", "Mandrem": "mandrem", "Mapusa": "mapusa",
    "Margao": "margao", "Miramar": "miramar", "Mobor": "mobor", "Morjim": "morjim",
    "Nerul": "nerul", "Old Goa": "old-goa", "Palolem": "palolem", "Panaji": "panaji",
    "Panjim": "panjim", "Patnem": "patnem", "Ponda": "ponda", "Porvorim": "porvorim",
    "Quepem": "quepem", "Saligao": "saligao", "Sinquerim": "sinquerim", "Siolim": "siolim",
    "Utorda": "utorda", "Vagator": "vagator", "Varca": "varca", "Vasco": "vasco",
    "Vasco da Gama": "vasco-da-gama",
}

SCORE_LABELS = (
    (9.0, "Exceptional"),
    (8.0, "Excellent"),
    (7.0, "Very Good"),
    (6.0, "Good"),
    (5.0, "Average"),
)


# =============================================================================
# Helpers
# =============================================================================


def slugify(text: str | None) -> str:
    return _SLUG_RE.sub("-", (text or "").lower()).strip("-")


def first_of(*values: Any) -> Any:
    """First value that is not None or an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def neighborhood_for(area: str | None) -> str | None:
    if not area:
        return None
    if area in AREAS:
        return AREAS[area]
    lowered = area.lower()
    return next((slug for slug in AREAS.values() if slug.replace("-", " ") in lowered), None)


def parse_price_level(value: Any) -> int | None:
    """"$$" -> 2; ints pass through."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text and set(text) <= {"$", "₹", "€", "£"}:
        return len(text)
    if text.isdigit():
        return int(text)
    return None


def to_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_int(value: Any) -> int | None:
    number = to_float(value)
    return int(number) if number is not None else None


def as_list(value: Any) -> list[Any]:
    """"Spa" -> ["Spa"]; None -> []; other iterables become lists."""
    if value is None or value == "":
        return []
    if isinstance(value, (str, Mapping)):
        return [value]
    if isinstance(value, Iterable):
        return list(value)
    return [value]


def extract_social_links(links: Iterable[Any]) -> dict[str, str]:
    found: dict[str, str] = {}
    for link in links or []:
        url = link.get("url") if isinstance(link, Mapping) else link
        if not isinstance(url, str):
            continue
        lowered = url.lower()
        for platform, needles in SOCIAL_DOMAINS.items():
            if platform not in found and any(needle in lowered for needle in needles):
                found[platform] = url
    return found


def find_menu_link(links: Iterable[Any]) -> str | None:
    for link in links or []:
        url = link.get("url") if isinstance(link, Mapping) else link
        if isinstance(url, str) and ("menu" in url.lower() or "food" in url.lower()):
            return url
    return None


def find_email(links: Iterable[Any], text: str | None = None) -> str | None:
    for link in links or []:
        if isinstance(link, str) and link.lower().startswith("mailto:"):
            return link[len("mailto:"):].split("?")[0]
    if text:
        match = EMAIL_RE.search(text)
        if match:
            return match.group(0)
    return None


def _require_mapping(raw: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise MappingError(f"Expected an object for {what}, got {type(raw).__name__}")
    return raw


def _items(raw: Any, *keys: str) -> list[Any]:
    """Accept a bare list or an object holding the list under one of `keys`."""
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, Mapping):
        for key in keys:
            value = raw.get(key)
            if isinstance(value, list):
                return value
        return []
    raise MappingError(f"Expected a list or object, got {type(raw).__name__}")


def _first_place(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, list):
        if not raw:
            raise MappingError("Places provider returned no results")
        raw = raw[0]
    elif isinstance(raw, Mapping) and isinstance(raw.get("results"), list):
        results = raw["results"]
        if not results:
            raise MappingError("Places provider returned no results")
        raw = results[0]
    return _require_mapping(raw, "place details")


def place_id_from_search(raw: Any) -> str | None:
    """Place id of the best text-search match, if any."""
    place = _first_place(raw)
    return first_of(place.get("place_id"), place.get("placeId"), place.get("id"))


# =============================================================================
# Input builders: (seed, draft, raw_outputs) -> provider payload | None
# =============================================================================


def _location(draft: Mapping[str, Any]) -> str:
    return " ".join(part for part in (draft.get("name"), draft.get("area")) if part)


def places_input(seed, draft, raw) -> dict[str, Any]:
    return {
        "place_id": first_of(draft.get("google_place_id"), seed.get("place_id"), seed.get("placeId")),
        "query": first_of(seed.get("search_query"), _location(draft)),
    }


def website_input(seed, draft, raw) -> dict[str, Any] | None:
    website = draft.get("website")
    if not website:
        return None
    return {"url": website, "formats": ["markdown", "links"]}


def web_search_input(suffix: str):
    def build(seed, draft, raw) -> dict[str, Any] | None:
        location = _location(draft)
        if not location:
            return None
        return {"query": f"{location} {suffix}".strip(), "limit": 5}

    build.__name__ = f"web_search_input_{slugify(suffix) or 'general'}"
    return build


def site_search_input(seed, draft, raw) -> dict[str, Any] | None:
    """Rooms / menu searches: scoped to the entity's own site when we know it."""
    location = _location(draft)
    if not location:
        return None
    return {"query": location, "website": draft.get("website")}


def social_input(seed, draft, raw) -> dict[str, Any]:
    return {"name": draft.get("name"), "area": draft.get("area"), "website": draft.get("website")}


def reviews_input(seed, draft, raw) -> dict[str, Any] | None:
    place_id = draft.get("google_place_id")
    if not place_id:
        return None
    return {"place_id": place_id, "max_reviews": MAX_REVIEWS, "sort": "newest"}


def review_site_input(site: str):
    def build(seed, draft, raw) -> dict[str, Any] | None:
        location = _location(draft)
        if not location:
            return None
        return {"query": f"{location} {site}", "name": draft.get("name")}

    build.__name__ = f"review_site_input_{site}"
    return build


def images_input(seed, draft, raw) -> dict[str, Any]:
    return {
        "name": draft.get("name"),
        "website": draft.get("website"),
        "candidate_urls": [img["url"] for img in draft.get("images") or [] if isinstance(img, Mapping) and img.get("url")],
    }


def sentiment_input(seed, draft, raw) -> dict[str, Any] | None:
    texts = [r.get("text") for r in draft.get("reviews") or [] if isinstance(r, Mapping) and r.get("text")]
    if not texts:
        return None
    return {"name": draft.get("name"), "reviews": texts[:MAX_REVIEWS]}


def enhancement_input(entity_type: str):
    def build(seed, draft, raw) -> dict[str, Any]:
        website = raw.get("website_scrape") or {}
        website_text = ""
        if isinstance(website, Mapping):
            website_text = str(first_of(website.get("markdown"), website.get("text"), "") or "")
        return {
            "entity_type": entity_type,
            "record": {k: v for k, v in draft.items() if k not in ("reviews", "website_text")},
            "reviews": [r.get("text") for r in draft.get("reviews") or [] if isinstance(r, Mapping)][:20],
            "website_content": website_text[:MAX_WEBSITE_TEXT],
        }

    build.__name__ = f"enhancement_input_{entity_type}"
    return build


DERIVED_INPUT_FIELDS = (
    "name", "area", "rating", "review_count", "tripadvisor_rating", "tripadvisor_review_count",
    "booking_com_rating", "booking_com_review_count", "sentiment_score", "categories",
)


def derived_input(seed, draft, raw) -> dict[str, Any]:
    return {key: draft.get(key) for key in DERIVED_INPUT_FIELDS}


# =============================================================================
# Mappers: (raw_output, draft) -> field patch
# =============================================================================

SEED_FIELDS = {
    "name": ("name", "title", "search_query"),
    "google_place_id": ("place_id", "placeId", "google_place_id"),
    "address": ("formatted_address", "address"),
    "area": ("area", "vicinity", "governorate"),
    "website": ("website",),
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lng"),
}


def map_seed(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    seed = _require_mapping(raw, "seed")
    patch: dict[str, Any] = {}
    used: set[str] = set()
    for field_name, keys in SEED_FIELDS.items():
        for key in keys:
            if seed.get(key) not in (None, ""):
                patch[field_name] = seed[key]
                used.update(keys)
                break
    if not patch.get("name"):
        raise MappingError("Seed has no name")
    patch["name"] = str(patch["name"]).strip()
    for coord in ("latitude", "longitude"):
        if coord in patch:
            patch[coord] = to_float(patch[coord])
    patch["slug"] = slugify(seed.get("slug") or "-".join(filter(None, (patch["name"], patch.get("area")))))
    extras = {k: v for k, v in seed.items() if k not in used and k != "slug" and v not in (None, "")}
    if extras:
        patch["seed_attributes"] = extras
    return patch


def map_place_details(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    place = _first_place(raw)
    location = place.get("location") if isinstance(place.get("location"), Mapping) else {}
    area = first_of(place.get("neighborhood"), place.get("city"), place.get("area"))
    images = [{"url": url, "source": "places"} for url in place.get("imageUrls") or [] if isinstance(url, str)]
    categories = as_list(place.get("categories")) or as_list(place.get("categoryName"))
    return {
        "name": first_of(place.get("title"), place.get("name")),
        "google_place_id": first_of(place.get("placeId"), place.get("place_id"), place.get("id")),
        "address": first_of(place.get("address"), place.get("fullAddress"), place.get("formattedAddress")),
        "area": area,
        "neighborhood_id": neighborhood_for(area),
        "latitude": to_float(first_of(location.get("lat"), place.get("latitude"))),
        "longitude": to_float(first_of(location.get("lng"), place.get("longitude"))),
        "phone": first_of(place.get("phone"), place.get("phoneUnformatted"), place.get("phoneNumber")),
        "website": first_of(place.get("website"), place.get("url")),
        "rating": to_float(first_of(place.get("totalScore"), place.get("rating"))),
        "review_count": to_int(first_of(place.get("reviewsCount"), place.get("userRatingsTotal"))),
        "price_level": parse_price_level(first_of(place.get("price"), place.get("priceLevel"))),
        "opening_hours": place.get("openingHours"),
        "categories": categories,
        "images": images,
    }


def map_website(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    page = _require_mapping(raw, "website scrape")
    links = page.get("links") or []
    text = str(first_of(page.get("markdown"), page.get("text"), "") or "")
    metadata = page.get("metadata") if isinstance(page.get("metadata"), Mapping) else {}
    return {
        "website_text": text[:MAX_WEBSITE_TEXT],
        "menu_link": find_menu_link(links),
        "email": find_email(links, text),
        "description": metadata.get("description"),
        **extract_social_links(links),
    }


def map_web_search(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    results = [r for r in _items(raw, "results", "data", "web") if isinstance(r, Mapping)]
    urls = [r.get("url") for r in results if r.get("url")]
    snippets = " ".join(str(first_of(r.get("description"), r.get("snippet"), "")) for r in results)
    return {
        "web_mentions": [{"url": r.get("url"), "title": r.get("title")} for r in results if r.get("url")],
        "email": find_email([], snippets),
        **extract_social_links(urls),
    }


ROOM_KEYS = ("name", "description", "price", "currency", "capacity", "size", "amenities")


def map_rooms(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    rooms = [r for r in _items(raw, "rooms", "room_types", "results") if isinstance(r, Mapping)]
    return {"room_types": [{k: r[k] for k in ROOM_KEYS if k in r} for r in rooms if r.get("name")]}


def map_menu(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    items = [i for i in _items(raw, "items", "menu_items", "dishes") if isinstance(i, Mapping)]
    menu_link = raw.get("menu_url") if isinstance(raw, Mapping) else None
    return {
        "menu_items": [{k: i[k] for k in ("name", "description", "price", "category") if k in i} for i in items],
        "menu_link": menu_link,
    }


def map_social(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    results = _require_mapping(raw, "social search")
    patch: dict[str, Any] = {}
    for platform in SOCIAL_DOMAINS:
        entry = results.get(platform)
        url = entry.get("url") if isinstance(entry, Mapping) else entry
        if isinstance(url, str) and url:
            patch[platform] = url
    return patch


def _review(entry: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "author": first_of(entry.get("name"), entry.get("author"), entry.get("author_name")),
        "rating": to_float(first_of(entry.get("stars"), entry.get("rating"))),
        "text": first_of(entry.get("text"), entry.get("textTranslated"), entry.get("review")),
        "published_at": first_of(entry.get("publishedAtDate"), entry.get("published_at"), entry.get("time")),
    }


def map_reviews(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    entries = [r for r in _items(raw, "reviews", "items") if isinstance(r, Mapping)]
    patch: dict[str, Any] = {"reviews": [_review(r) for r in entries[:MAX_REVIEWS]]}
    if isinstance(raw, Mapping):
        patch["rating"] = to_float(first_of(raw.get("rating"), raw.get("totalScore")))
        patch["review_count"] = to_int(first_of(raw.get("reviews_count"), raw.get("reviewsCount")))
    return patch


def review_site_mapper(prefix: str):
    """Rating aggregator payload -> `<prefix>_rating`, `<prefix>_review_count`, `<prefix>_url`."""

    def mapper(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
        data = _require_mapping(raw, f"{prefix} lookup")
        return {
            f"{prefix}_rating": to_float(first_of(data.get("rating"), data.get("score"))),
            f"{prefix}_review_count": to_int(first_of(data.get("reviews_count"), data.get("review_count"))),
            f"{prefix}_url": data.get("url"),
        }

    mapper.__name__ = f"map_{prefix}"
    return mapper


def map_images(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    entries = _items(raw, "images", "results")
    images = []
    for entry in entries:
        if isinstance(entry, str):
            images.append({"url": entry})
        elif isinstance(entry, Mapping) and entry.get("url"):
            images.append({k: entry[k] for k in ("url", "alt", "width", "height", "source") if k in entry})
    hero = raw.get("hero_image") if isinstance(raw, Mapping) else None
    return {"images": images, "hero_image": first_of(hero, images[0]["url"] if images else None)}


def map_sentiment(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(raw, str):
        return {"review_sentiment": raw}
    data = _require_mapping(raw, "sentiment analysis")
    score = to_float(first_of(data.get("score"), data.get("sentiment_score")))
    return {
        "review_sentiment": first_of(data.get("review_sentiment"), data.get("summary"), data.get("sentiment")),
        "sentiment_score": max(-1.0, min(1.0, score)) if score is not None else None,
        "sentiment_highlights": data.get("highlights"),
    }


ENHANCEMENT_FIELDS = (
    "description", "short_description", "meta_title", "meta_description", "review_sentiment",
    "amenities", "features",
)


def _faq(entry: Any) -> dict[str, Any] | None:
    if not isinstance(entry, Mapping) or not entry.get("question") or not entry.get("answer"):
        return None
    return {"question": entry["question"], "answer": entry["answer"], "category": entry.get("category") or "general"}


def enhancement_mapper(extra_fields: tuple[str, ...] = ()):
    """AI enhancement payload -> descriptive fields plus entity-specific extras."""

    def mapper(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
        data = _require_mapping(raw, "AI enhancement")
        patch = {key: data.get(key) for key in (*ENHANCEMENT_FIELDS, *extra_fields)}
        patch["faqs"] = [faq for faq in map(_faq, data.get("faqs") or []) if faq]
        patch["categories"] = as_list(first_of(data.get("suggested_categories"), data.get("categories")))
        contact = data.get("contact_info") if isinstance(data.get("contact_info"), Mapping) else {}
        patch["email"] = contact.get("email")
        patch["phone"] = contact.get("phone")
        for platform in SOCIAL_DOMAINS:
            patch[platform] = contact.get(platform)
        return patch

    mapper.__name__ = "map_enhancement"
    return mapper


def score_label(score: float) -> str:
    return next((label for floor, label in SCORE_LABELS if score >= floor), "Below Average")


def map_derived(raw: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
    """
    Aggregate rating on a 0-10 scale: the review-count weighted average of
    every rating source (normalised to 0-10), nudged by AI sentiment.
    """
    data = _require_mapping(raw, "derived inputs")
    sources = {
        "google": (to_float(data.get("rating")), to_int(data.get("review_count")), 5.0),
        "tripadvisor": (to_float(data.get("tripadvisor_rating")), to_int(data.get("tripadvisor_review_count")), 5.0),
        "booking_com": (to_float(data.get("booking_com_rating")), to_int(data.get("booking_com_review_count")), 10.0),
    }
    breakdown: dict[str, Any] = {}
    weighted = 0.0
    total_reviews = 0
    for name, (rating, count, scale) in sources.items():
        if not rating or not count:
            continue
        normalized = rating / scale * 10
        breakdown[name] = {"rating": rating, "count": count, "normalized": round(normalized, 2)}
        weighted += normalized * count
        total_reviews += count

    base = weighted / total_reviews if total_reviews else 7.0
    sentiment = to_float(data.get("sentiment_score")) or 0.0
    score = round(min(max(base + sentiment * 0.5, 0.0), 10.0), 1)

    categories = as_list(data.get("categories"))
    return {
        "overall_rating": score,
        "score_label": score_label(score),
        "rating_breakdown": breakdown,
        "total_reviews_aggregated": total_reviews,
        "neighborhood_id": neighborhood_for(data.get("area")),
        "category_slugs": sorted({slugify(str(c)) for c in categories if c}) or None,
        "popularity": round(math.log10(total_reviews + 1), 2),
    }
