"""Identify the stock site and asset id behind a pasted URL.

Rules are evaluated strictly in the order of ``URL_RULES`` and the first match
wins. For a site with several URL shapes the more specific pattern comes
first, so a looser fallback never captures a number from the slug instead of
the real id. ``site:id`` shorthand is tried only when no rule matches.
"""
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from src.parse.models import ResolvedAsset

Extractor = Callable[[re.Match], Optional[str]]

SHORTHAND_RE = re.compile(r"^([a-z0-9_]+):([^/\s]+)$", re.IGNORECASE)

# Vendor lookups for these sites need the original URL, not only site + id
FULL_URL_SITES = frozenset({"pngtree", "storyblocks"})


def _first_group(match: re.Match) -> Optional[str]:
    return match.group(1)


@dataclass(frozen=True)
class UrlRule:
    """One URL shape: the site it belongs to and how to pull the id out."""

    site: str
    pattern: re.Pattern
    extractor: Extractor = _first_group

    def extract(self, text: str) -> Optional[str]:
        match = self.pattern.search(text)
        if not match:
            return None
        value = self.extractor(match)
        return value or None


def _rule(site: str, pattern: str, extractor: Extractor = _first_group, flags: int = re.IGNORECASE) -> UrlRule:
    return UrlRule(site=site, pattern=re.compile(pattern, flags), extractor=extractor)


_END = r"(?:[/?#]|$)"
_SHUTTER_KINDS = r"(?:image|image-photo|image-vector|image-illustration|image-generated|editorial)"

URL_RULES: tuple[UrlRule, ...] = (
    # Shutterstock: slug-id before bare id, otherwise digits in the slug win
    _rule("shutterstock", rf"shutterstock\.com/(?:[a-z-]+/)*{_SHUTTER_KINDS}/[a-z0-9-]+-(\d+){_END}"),
    _rule("shutterstock", rf"shutterstock\.com/(?:[a-z-]+/)*{_SHUTTER_KINDS}/(\d+){_END}"),
    _rule("vshutter", r"shutterstock\.com/(?:[a-z-]+/)?video/clip-(\d+)(?:[-/?#]|$)"),
    _rule("mshutter", r"shutterstock\.com/(?:[a-z-]+/)?music/(?:[^?#]*?)track-(\d+)(?:[-/?#]|$)"),
    # Adobe Stock: typed detail page, then ?asset_id=, then any numeric segment
    _rule(
        "adobestock",
        r"stock\.adobe\.com/(?:[a-z]{2}(?:-[a-z]{2})?/)?(?:images|templates|3d-assets|stock-photo|video|audio)"
        rf"/[\w%.,-]+/(\d+){_END}",
    ),
    _rule("adobestock", r"stock\.adobe\.com/[^#]*?[?&]asset_id=(\d+)"),
    _rule("adobestock", rf"stock\.adobe\.com/(?:[^?#]*/)?(\d+){_END}"),
    # Depositphotos: video shapes first, the legacy /<id>/ rule would swallow them
    _rule("depositphotos_video", r"depositphotos\.com/(\d+)/stock-video"),
    _rule("depositphotos_video", r"depositphotos\.com/(?:[a-z]{2}/)?video/(?:[a-z0-9-]+-)?(\d+)\.html"),
    _rule(
        "depositphotos",
        r"depositphotos\.com/(?:[a-z]{2}/)?(?:photo|vector|illustration|editorial)/(?:[a-z0-9-]+-)?(\d+)\.html",
    ),
    _rule("depositphotos", r"depositphotos\.com.*?depositphotos_(\d+)"),
    _rule("depositphotos", r"depositphotos\.com/(\d+)(?:/|$)"),
    # 123RF
    _rule("123rf", r"123rf\.com/(?:[a-z]{2}/)?(?:photo|free-photo|clipart-vector|stock-photo)_(\d+)(?:[_./?#]|$)"),
    _rule("123rf", r"123rf\.com/[^#]*?[?&]mediapopup=(\d+)"),
    # iStock and Getty (Getty content is ordered through the istockphoto entry)
    _rule(
        "istockphoto",
        rf"istockphoto\.com/(?:[a-z]{{2}}/)?(?:photo|vector|video|illustration)/[a-z0-9-]*?gm(\d+)(?:-\d+)?{_END}",
    ),
    _rule("istockphoto", r"istockphoto\.com/.*?-gm(\d+)"),
    _rule("istockphoto", rf"gettyimages\.[a-z.]+/detail/(?:[a-z0-9-]+/)*(\d+){_END}"),
    # Freepik: video keywords first
    _rule(
        "vfreepik",
        rf"freepik\.com/(?:[a-z-]+/)*(?:free-video|premium-video|video)/[a-z0-9-]*_(\d+)(?:[./?#]|$)",
    ),
    _rule(
        "freepik",
        r"freepik\.com/(?:[a-z-]+/)*"
        r"(?:photo|vector|psd|free-photo|free-vector|free-psd|premium-photo|premium-vector|premium-psd"
        r"|free-ai-image|premium-ai-image)/[a-z0-9-]*_(\d+)(?:[./?#]|$)",
    ),
    # Flaticon: single icons carry an id, packs only a slug
    _rule(
        "flaticon",
        rf"flaticon\.com/(?:[a-z]{{2}}/)?(?:free-icon|premium-icon|icon|free-sticker|premium-sticker)/[a-z0-9-]*_(\d+){_END}",
    ),
    _rule("flaticonpack", rf"flaticon\.com/(?:[a-z]{{2}}/)?(?:packs|stickers-pack)/([a-z0-9-]+){_END}"),
    # Envato Elements ids are upper-case alphanumerics after the slug
    _rule("envato", rf"elements\.envato\.com/(?:[a-z]{{2}}/)?[a-z0-9-]+-([A-Z0-9]{{5,}}){_END}", flags=0),
    _rule("vecteezy", rf"vecteezy\.com/(?:[a-z-]+/)*(\d+)(?:-[a-z0-9-]*)?{_END}"),
    _rule("dreamstime", rf"dreamstime\.com/(?:[a-z0-9-]+-)?image(\d+){_END}"),
    _rule("pngtree", rf"pngtree\.com/(?:[a-z-]+/)*(?:[a-z0-9-]+_)?(\d+)(?:\.html)?{_END}"),
    _rule("vectorstock", rf"vectorstock\.com/[a-z0-9-]+/[a-z0-9-]+-(\d+){_END}"),
    _rule("motionarray", rf"motionarray\.com/[a-z0-9-]+/[a-z0-9-]+-(\d+){_END}"),
    _rule(
        "alamy",
        r"(?:alamy|alamyimages)\.(?:com|es|de|it|fr)/(?:[a-z-]+/)*[a-z0-9-]*-(\d+)(?:\.html)?(?:[?#]|$)",
    ),
    _rule("storyblocks", rf"storyblocks\.com/(?:video|images|audio)/stock/[a-z0-9-]+-([a-z0-9_]+){_END}"),
    _rule("epidemicsound", rf"epidemicsound\.com/(?:track|music|sound-effect)s?/([a-z0-9-]+){_END}"),
    _rule("rawpixel", rf"rawpixel\.com/image/(\d+){_END}"),
    _rule("ui8", rf"ui8\.net/(?:[a-z0-9-]+/){{1,2}}([a-z0-9-]+){_END}"),
    _rule("iconscout", rf"iconscout\.com/(?:[a-z]{{2}}/)?[a-z0-9-]+/([a-z0-9_-]+){_END}"),
)


def resolve(value: str, available_sites: Optional[Iterable[str]] = None) -> Optional[ResolvedAsset]:
    """Map a URL or ``site:id`` shorthand to a ResolvedAsset, or None.

    When ``available_sites`` is given, rules for sites outside that set are
    skipped so a URL can fall through to a later rule for a live site.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None

    allowed = {site.lower() for site in available_sites} if available_sites is not None else None

    for rule in URL_RULES:
        if allowed is not None and rule.site not in allowed:
            continue
        asset_id = rule.extract(text)
        if asset_id:
            return ResolvedAsset(site=rule.site, asset_id=asset_id, source_url=text)

    shorthand = SHORTHAND_RE.match(text)
    if shorthand:
        site = shorthand.group(1).lower()
        if allowed is None or site in allowed:
            return ResolvedAsset(site=site, asset_id=shorthand.group(2), source_url=text)

    return None


def requires_full_url(site: str) -> bool:
    """Check if vendor lookups for a site need the full source URL."""
    return site.lower() in FULL_URL_SITES


def split_resolvable(values: Iterable[str]) -> tuple[list[ResolvedAsset], list[str]]:
    """Partition inputs into resolved assets and unresolvable strings."""
    resolved: list[ResolvedAsset] = []
    invalid: list[str] = []
    for value in values:
        asset = resolve(value)
        if asset:
            resolved.append(asset)
        else:
            invalid.append(value)
    return resolved, invalid
