"""
Export normalization for ETL.

This module validates raw export documents from dating platforms and
decodes them into one canonical shape (``CanonicalExport``) that the
extractors consume without caring which platform or export version the
data came from.

Design Decisions:
    1. Each export section is a pydantic model; a ValidationError is
       reported as SchemaValidationError naming the first failing field
       path (e.g. "Messages[1].match_id")
    2. Platforms do not publish a reliable export version, so format
       variants are detected by inspecting the data itself
    3. Photo list variants are a tagged union whose tag comes from an
       ordered list of shape predicates; the first predicate that matches wins
    4. Models allow extra fields; whatever we don't model lands in
       ``model_extra`` and is kept in ``extra`` dicts so later passes can
       mine it without a redeploy

Defaults for missing optional fields:
    - education: ""
    - pos: (0.0, 0.0)
    - bio/city/region/country: None
    - usage maps, matches, photos: empty
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
)

from swipe_analysis.errors import SchemaValidationError, UnsupportedPlatformError

logger = logging.getLogger(__name__)


class Platform(str, Enum):
    TINDER = "TINDER"
    HINGE = "HINGE"
    BUMBLE = "BUMBLE"


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"
    MORE = "MORE"
    UNKNOWN = "UNKNOWN"


TINDER_GENDER_MAP: Dict[str, Gender] = {
    "M": Gender.MALE,
    "F": Gender.FEMALE,
    "Other": Gender.OTHER,
    "More": Gender.MORE,
    "Unknown": Gender.UNKNOWN,
}

HINGE_GENDER_MAP: Dict[str, Gender] = {
    "man": Gender.MALE,
    "male": Gender.MALE,
    "woman": Gender.FEMALE,
    "female": Gender.FEMALE,
    "non-binary": Gender.OTHER,
    "nonbinary": Gender.OTHER,
}

# Usage counters in a Tinder export, keyed by our canonical name
TINDER_USAGE_KEYS: Dict[str, str] = {
    "app_opens": "app_opens",
    "swipes_likes": "swipe_likes",
    "swipes_passes": "swipe_passes",
    "superlikes": "super_likes",
    "matches": "matches",
    "messages_sent": "messages_sent",
    "messages_received": "messages_received",
}


# =============================================================================
# Canonical shape
# =============================================================================


@dataclass
class CanonicalPhoto:
    """A profile photo, whatever shape the export stored it in."""

    photo_id: Optional[str]
    url: Optional[str] = None
    created_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalMessage:
    sent_at: datetime
    direction: str
    content_raw: str = ""
    type_raw: Optional[str] = None
    recipient: Optional[str] = None
    media_url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalMatch:
    platform_match_id: str
    messages: List[CanonicalMessage] = field(default_factory=list)
    matched_at: Optional[datetime] = None
    liked_at: Optional[datetime] = None
    we_met: Optional[str] = None
    blocked: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalUser:
    birth_date: date
    gender: Gender
    gender_str: str
    gender_filter: Gender
    interested_in: Gender
    age_filter_min: int
    age_filter_max: int
    create_date: Optional[datetime] = None
    bio: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    education: str = ""
    pos: Tuple[float, float] = (0.0, 0.0)
    interests: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalUsage:
    """Parallel per-day counters keyed by YYYY-MM-DD."""

    app_opens: Dict[str, int] = field(default_factory=dict)
    swipe_likes: Dict[str, int] = field(default_factory=dict)
    swipe_passes: Dict[str, int] = field(default_factory=dict)
    super_likes: Dict[str, int] = field(default_factory=dict)
    matches: Dict[str, int] = field(default_factory=dict)
    messages_sent: Dict[str, int] = field(default_factory=dict)
    messages_received: Dict[str, int] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    def all_dates(self) -> List[str]:
        dates = set()
        for name in TINDER_USAGE_KEYS.values():
            dates.update(getattr(self, name).keys())
        return sorted(dates)


@dataclass
class CanonicalExport:
    platform: Platform
    user: CanonicalUser
    usage: CanonicalUsage
    matches: List[CanonicalMatch] = field(default_factory=list)
    photos: List[CanonicalPhoto] = field(default_factory=list)
    extra_sections: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Field types
# =============================================================================


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an export timestamp into an aware UTC datetime.

    Handles ISO-8601 (with or without 'Z'), "YYYY-MM-DD HH:MM:SS" and the
    RFC 2822 form used by older Tinder exports ("Wed, 05 Apr 2017 11:32:11 GMT").

    Returns:
        datetime in UTC, or None if the value can't be parsed.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError, OverflowError):
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        return None


def _not_bool(value: Any) -> Any:
    # bool is an int subclass and would otherwise pass as 0/1
    if isinstance(value, bool):
        raise ValueError(f"expected an integer, got {value!r}")
    return value


def _date_text(value: Any) -> date:
    if not isinstance(value, str):
        raise ValueError(f"expected a date string, got {type(value).__name__}")
    return date.fromisoformat(value[:10])


def _day_key(value: str) -> str:
    return _date_text(value).isoformat()


def _required_timestamp(value: Any) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"not a valid timestamp: {value!r}")
    return parsed


Count = Annotated[int, BeforeValidator(_not_bool)]
DayKey = Annotated[str, AfterValidator(_day_key)]
DayCounts = Optional[Dict[DayKey, Count]]
BirthDate = Annotated[date, BeforeValidator(_date_text)]
Timestamp = Annotated[datetime, BeforeValidator(_required_timestamp)]

_BIRTH_DATE = TypeAdapter(BirthDate)


def _field_path(loc: Sequence[Union[str, int]], root: str = "") -> str:
    """Render a pydantic error location as "Messages[1].match_id"."""
    path = root
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        elif part != "[key]":
            path = f"{path}.{part}" if path else str(part)
    return path or "$"


def _schema_error(error: ValidationError, root: str = "") -> SchemaValidationError:
    first = error.errors()[0]
    return SchemaValidationError(_field_path(first["loc"], root), first["msg"])


def parse_birth_date(value: Any, path: str) -> date:
    """Parse a birth date ("1990-05-15" or a full ISO timestamp)."""
    try:
        return _BIRTH_DATE.validate_python(value)
    except ValidationError as e:
        raise _schema_error(e, path) from e


def map_tinder_gender(value: str) -> Gender:
    return TINDER_GENDER_MAP.get(value, Gender.UNKNOWN)


def map_hinge_gender(value: str) -> Gender:
    return HINGE_GENDER_MAP.get(value.strip().lower(), Gender.UNKNOWN)


# =============================================================================
# Export sections
# =============================================================================


class Section(BaseModel):
    """An export object; fields we don't model stay in ``model_extra``."""

    model_config = ConfigDict(extra="allow")

    @property
    def unmodeled(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class TinderCity(Section):
    name: Optional[str] = None
    region: Optional[str] = None


class TinderCountry(Section):
    code: Optional[str] = None


class Position(Section):
    lat: float = 0.0
    lon: float = 0.0


class TinderUser(Section):
    birth_date: BirthDate
    gender: str
    gender_filter: str
    interested_in: str
    age_filter_min: Count
    age_filter_max: Count
    create_date: Any = None
    bio: Optional[str] = None
    city: Optional[TinderCity] = None
    country: Union[TinderCountry, str, None] = None
    education: Optional[str] = None
    pos: Optional[Position] = None
    user_interests: Optional[List[Any]] = None
    interests: Optional[List[Any]] = None


class TinderUsage(Section):
    app_opens: DayCounts = None
    swipes_likes: DayCounts = None
    swipes_passes: DayCounts = None
    superlikes: DayCounts = None
    matches: DayCounts = None
    messages_sent: DayCounts = None
    messages_received: DayCounts = None


class TinderMessage(Section):
    to: Any = None
    sender: Any = Field(None, alias="from")
    message: Any = None
    sent_date: Any = None
    type: Any = None
    fixed_height: Optional[str] = None


class TinderMatch(Section):
    match_id: str
    messages: Optional[List[TinderMessage]] = None


class TinderDocument(Section):
    user: TinderUser = Field(alias="User")
    usage: Optional[TinderUsage] = Field(None, alias="Usage")
    messages: Optional[List[TinderMatch]] = Field(None, alias="Messages")
    photos: Any = Field(None, alias="Photos")


class HingeProfile(Section):
    age: Count
    gender: str
    education_attained: Optional[str] = None


class HingeAccount(Section):
    signup_time: Timestamp


class HingePreferences(Section):
    gender_preference: str
    age_min: Count
    age_max: Count


class HingeLocation(Section):
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


class HingeUser(Section):
    profile: HingeProfile
    account: HingeAccount
    preferences: HingePreferences
    location: Optional[HingeLocation] = None


class HingeEvent(Section):
    timestamp: Any = None

    @property
    def at(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)


class HingeChat(HingeEvent):
    body: Any = None


class HingeVoiceNote(HingeEvent):
    url: Optional[str] = None


class HingeWeMet(HingeEvent):
    did_meet_subject: Optional[str] = None


class HingeThread(Section):
    like: Optional[List[HingeEvent]] = None
    match: Optional[List[HingeEvent]] = None
    chats: Optional[List[HingeChat]] = None
    voice_notes: Optional[List[HingeVoiceNote]] = None
    block: Optional[List[HingeEvent]] = None
    we_met: Optional[List[HingeWeMet]] = None


class HingeDocument(Section):
    user: HingeUser = Field(alias="User")
    matches: Optional[List[HingeThread]] = Field(None, alias="Matches")
    media: Any = Field(None, alias="Media")


# =============================================================================
# Photo list variants
# =============================================================================
# Older Tinder exports list photos as bare file names; newer ones list
# objects carrying the same id plus metadata. Hinge lists media objects.


class PhotoObject(Section):
    id: Any
    url: Optional[str] = None
    created_at: Optional[str] = None


class MediaObject(Section):
    url: Optional[str] = None


def _is_photo_object_list(raw: Any) -> bool:
    return (
        isinstance(raw, list)
        and len(raw) > 0
        and isinstance(raw[0], Mapping)
        and "id" in raw[0]
        and "url" in raw[0]
    )


def _is_media_object_list(raw: Any) -> bool:
    return (
        isinstance(raw, list)
        and len(raw) > 0
        and isinstance(raw[0], Mapping)
        and "url" in raw[0]
        and "id" not in raw[0]
    )


def _is_photo_name_list(raw: Any) -> bool:
    return isinstance(raw, list) and (len(raw) == 0 or isinstance(raw[0], str))


PHOTO_SHAPES: Sequence[Tuple[str, Callable[[Any], bool]]] = (
    ("objects", _is_photo_object_list),
    ("media", _is_media_object_list),
    ("names", _is_photo_name_list),
)


def _photo_shape(raw: Any) -> Optional[str]:
    for tag, predicate in PHOTO_SHAPES:
        if predicate(raw):
            return tag
    return None


PhotoList = Annotated[
    Union[
        Annotated[List[PhotoObject], Tag("objects")],
        Annotated[List[MediaObject], Tag("media")],
        Annotated[List[str], Tag("names")],
    ],
    Discriminator(
        _photo_shape,
        custom_error_type="photo_format",
        custom_error_message="unrecognized photo list format",
    ),
]

_PHOTO_LIST = TypeAdapter(PhotoList)


def _canonical_photo(item: Union[PhotoObject, MediaObject, str]) -> CanonicalPhoto:
    if isinstance(item, PhotoObject):
        return CanonicalPhoto(
            photo_id=str(item.id), url=item.url, created_at=item.created_at, extra=item.unmodeled
        )
    if isinstance(item, MediaObject):
        return CanonicalPhoto(photo_id=None, url=item.url, extra=item.unmodeled)
    return CanonicalPhoto(photo_id=item, url=item)


def decode_photos(raw: Any, path: str = "Photos") -> List[CanonicalPhoto]:
    """
    Decode a photo list in any known shape.

    Args:
        raw: The raw Photos/Media value (None means no photos).
        path: Field path used in error messages.

    Returns:
        Canonical photo list.

    Raises:
        SchemaValidationError: If no known shape matches.
    """
    if raw is None:
        return []
    try:
        items = _PHOTO_LIST.validate_python(raw)
    except ValidationError as e:
        raise _schema_error(e, path) from e
    return [_canonical_photo(item) for item in items]


def _interest_names(raw: Optional[List[Any]]) -> List[str]:
    """user_interests is a list of strings; interests is a list of {name: ...}."""
    names = []
    for item in raw or []:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, Mapping) and isinstance(item.get("name"), str):
            names.append(item["name"])
    return names


# =============================================================================
# Tinder
# =============================================================================


def _normalize_tinder_user(user: TinderUser) -> CanonicalUser:
    country = user.country.code if isinstance(user.country, TinderCountry) else user.country

    return CanonicalUser(
        birth_date=user.birth_date,
        gender=map_tinder_gender(user.gender),
        gender_str=user.gender,
        gender_filter=map_tinder_gender(user.gender_filter),
        interested_in=map_tinder_gender(user.interested_in),
        age_filter_min=user.age_filter_min,
        age_filter_max=user.age_filter_max,
        create_date=parse_timestamp(user.create_date),
        bio=user.bio,
        city=user.city.name if user.city else None,
        region=user.city.region if user.city else None,
        country=country,
        education=user.education or "",
        pos=(user.pos.lat, user.pos.lon) if user.pos else (0.0, 0.0),
        interests=_interest_names(user.user_interests) or _interest_names(user.interests),
        extra=user.unmodeled,
    )


def _normalize_tinder_usage(usage: Optional[TinderUsage]) -> CanonicalUsage:
    result = CanonicalUsage()
    if usage is None:
        return result
    for source_key, canonical_key in TINDER_USAGE_KEYS.items():
        setattr(result, canonical_key, dict(getattr(usage, source_key) or {}))
    result.extra = usage.unmodeled
    return result


def _normalize_tinder_matches(raw: Optional[List[TinderMatch]]) -> List[CanonicalMatch]:
    matches = []
    for i, match in enumerate(raw or []):
        messages = []
        for j, msg in enumerate(match.messages or []):
            sent_at = parse_timestamp(msg.sent_date)
            if sent_at is None:
                logger.debug(
                    f"Skipping message without usable sent_date: Messages[{i}].messages[{j}]"
                )
                continue
            # Tinder exports only contain messages the user sent
            messages.append(
                CanonicalMessage(
                    sent_at=sent_at,
                    direction="sent",
                    content_raw=msg.message if isinstance(msg.message, str) else "",
                    type_raw=str(msg.type) if msg.type is not None else None,
                    recipient=str(msg.to) if msg.to is not None else None,
                    media_url=msg.fixed_height,
                    extra=msg.unmodeled,
                )
            )

        matches.append(
            CanonicalMatch(
                platform_match_id=match.match_id, messages=messages, extra=match.unmodeled
            )
        )
    return matches


def normalize_tinder_export(document: Mapping[str, Any]) -> CanonicalExport:
    """
    Normalize a Tinder data export.

    Args:
        document: Decoded export JSON (already anonymized).

    Returns:
        CanonicalExport for the Tinder document.

    Raises:
        SchemaValidationError: If User is missing required fields, or a
            known section has an unexpected shape.
    """
    try:
        parsed = TinderDocument.model_validate(document)
    except ValidationError as e:
        raise _schema_error(e) from e

    return CanonicalExport(
        platform=Platform.TINDER,
        user=_normalize_tinder_user(parsed.user),
        usage=_normalize_tinder_usage(parsed.usage),
        matches=_normalize_tinder_matches(parsed.messages),
        photos=decode_photos(parsed.photos),
        extra_sections=parsed.unmodeled,
    )


# =============================================================================
# Hinge
# =============================================================================


def _hinge_match_id(timestamps: List[datetime]) -> str:
    """Hinge threads carry no id; derive one from the earliest event time."""
    earliest = min(timestamps).strftime("%Y-%m-%dT%H:%M:%SZ")
    return "hinge_" + hashlib.sha256(earliest.encode("utf-8")).hexdigest()[:24]


def _bump(counter: Dict[str, int], ts: Optional[datetime], amount: int = 1) -> None:
    if ts is None:
        return
    day = ts.date().isoformat()
    counter[day] = counter.get(day, 0) + amount


def _normalize_hinge_threads(
    threads: Optional[List[HingeThread]], usage: CanonicalUsage
) -> List[CanonicalMatch]:
    """
    Decode Hinge conversation threads and fold their events into usage.

    Hinge exports have no per-day counters, so likes, matches, sent
    chats/voice notes and rejected incoming likes are counted per event date.
    """
    matches = []
    for i, thread in enumerate(threads or []):
        likes = thread.like or []
        match_events = thread.match or []
        chats = thread.chats or []
        voice_notes = thread.voice_notes or []
        blocks = thread.block or []
        we_met = thread.we_met or []

        events: List[HingeEvent] = [*likes, *match_events, *chats, *voice_notes, *blocks, *we_met]
        timestamps = [e.at for e in events if e.at is not None]
        if not timestamps:
            logger.debug(f"Skipping Hinge thread without timestamps: Matches[{i}]")
            continue

        liked_at = likes[0].at if likes else None
        matched_at = match_events[0].at if match_events else None

        for like in likes:
            _bump(usage.swipe_likes, like.at)
        if matched_at is not None:
            _bump(usage.matches, matched_at)
        if blocks and not match_events:
            # Removing someone from "Likes You" without matching is a pass
            _bump(usage.swipe_passes, blocks[0].at)

        messages = []
        for chat in chats:
            if chat.at is None:
                continue
            _bump(usage.messages_sent, chat.at)
            messages.append(
                CanonicalMessage(
                    sent_at=chat.at,
                    direction="sent",
                    content_raw=chat.body if isinstance(chat.body, str) else "",
                    type_raw="text",
                    extra=chat.unmodeled,
                )
            )
        for note in voice_notes:
            if note.at is None:
                continue
            _bump(usage.messages_sent, note.at)
            messages.append(
                CanonicalMessage(
                    sent_at=note.at,
                    direction="sent",
                    type_raw="voice_note",
                    media_url=note.url,
                    extra=note.unmodeled,
                )
            )
        messages.sort(key=lambda m: m.sent_at)

        matches.append(
            CanonicalMatch(
                platform_match_id=_hinge_match_id(timestamps),
                messages=messages,
                matched_at=matched_at,
                liked_at=liked_at,
                we_met=we_met[-1].did_meet_subject if we_met else None,
                blocked=bool(blocks),
                extra=thread.unmodeled,
            )
        )
    return matches


def _normalize_hinge_user(user: HingeUser) -> CanonicalUser:
    signup = user.account.signup_time
    # Hinge only exports an age; approximate the birth date as Jan 1
    try:
        birth_date = date(signup.year - user.profile.age, 1, 1)
    except (ValueError, OverflowError) as e:
        raise SchemaValidationError(
            "User.profile.age", f"age {user.profile.age} is out of range"
        ) from e

    location = user.location or HingeLocation()
    pos = (0.0, 0.0)
    if location.lat is not None and location.lon is not None:
        pos = (location.lat, location.lon)

    preference = user.preferences.gender_preference
    return CanonicalUser(
        birth_date=birth_date,
        gender=map_hinge_gender(user.profile.gender),
        gender_str=user.profile.gender,
        gender_filter=map_hinge_gender(preference),
        interested_in=map_hinge_gender(preference),
        age_filter_min=user.preferences.age_min,
        age_filter_max=user.preferences.age_max,
        create_date=signup,
        city=location.city,
        region=location.region,
        country=location.country,
        education=user.profile.education_attained or "",
        pos=pos,
        extra=user.unmodeled | {"profile": user.profile.unmodeled},
    )


def normalize_hinge_export(document: Mapping[str, Any]) -> CanonicalExport:
    """
    Normalize a Hinge data export (User + Matches + Prompts + Media).

    Raises:
        SchemaValidationError: If User is missing required fields.
    """
    try:
        parsed = HingeDocument.model_validate(document)
    except ValidationError as e:
        raise _schema_error(e) from e

    usage = CanonicalUsage()
    matches = _normalize_hinge_threads(parsed.matches, usage)

    return CanonicalExport(
        platform=Platform.HINGE,
        user=_normalize_hinge_user(parsed.user),
        usage=usage,
        matches=matches,
        photos=decode_photos(parsed.media, path="Media"),
        extra_sections=parsed.unmodeled,
    )


def normalize_export(document: Any, platform: Union[Platform, str]) -> CanonicalExport:
    """
    Normalize a raw export for the declared platform.

    Args:
        document: Decoded export JSON.
        platform: Platform the caller says the export came from.

    Returns:
        CanonicalExport.

    Raises:
        SchemaValidationError: On missing required fields / bad shapes.
        UnsupportedPlatformError: For platforms without a normalizer.
    """
    if not isinstance(document, Mapping):
        raise SchemaValidationError("$", "export root must be an object")

    try:
        platform = Platform(platform)
    except ValueError as e:
        raise UnsupportedPlatformError(str(platform)) from e

    if platform == Platform.TINDER:
        export = normalize_tinder_export(document)
    elif platform == Platform.HINGE:
        export = normalize_hinge_export(document)
    else:
        raise UnsupportedPlatformError(platform.value)

    logger.info(
        f"Normalized {platform.value} export: {len(export.usage.all_dates())} usage days, "
        f"{len(export.matches)} matches, {len(export.extra_sections)} unmodeled sections"
    )
    return export
