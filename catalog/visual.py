#!/usr/bin/env python3
"""
Visual confidence scoring and archive cards

Tier 1 (0.9-1.0): authoritative CDN or a verified archival partner
Tier 2 (0.6-0.8): registered secondary archive, attribution available
Tier 3 (0.3-0.5): no image, placeholder, unknown source, unreachable,
                  or rights not yet cleared

Scoring is a pure function of the URL, the declared source and the rights
status. The optional reachability check is the only network call and is off
unless asked for.

When an entity lands in tier 3 it gets an ArchiveCard: reason text and a
verification label. Nothing here ever produces or guesses an image URL.
"""

import logging
import re
from typing import Optional
from urllib.parse import urlparse

import requests

from catalog.config import KnownSource, VisualPolicy
from catalog.models import (
    ArchiveCard, ArchiveReason, Entity, ImageRef, VisualConfidenceResult, VisualType
)

logger = logging.getLogger(__name__)

REASON_TEXT = {
    ArchiveReason.NO_VERIFIED_SOURCE:
        'No image from a verified source is available for this title.',
    ArchiveReason.NEVER_SEARCHED:
        'Archives have not been searched for an image of this title yet.',
    ArchiveReason.SEARCHED_NOT_FOUND:
        'Archives were searched but no surviving image was found.',
    ArchiveReason.PENDING_RIGHTS_CLEARANCE:
        'An archival image exists and is awaiting rights clearance.',
}

VERIFICATION_LABEL = {
    ArchiveReason.NO_VERIFIED_SOURCE: 'unverified',
    ArchiveReason.NEVER_SEARCHED: 'pending_search',
    ArchiveReason.SEARCHED_NOT_FOUND: 'not_found',
    ArchiveReason.PENDING_RIGHTS_CLEARANCE: 'rights_pending',
}


def _host(url: str) -> str:
    try:
        return (urlparse(url).hostname or '').lower()
    except ValueError:
        return ''


def is_placeholder(url: str, policy: VisualPolicy) -> bool:
    """True for URLs that are placeholders, on placeholder hosts, or not URLs at all"""
    host = _host(url)
    if not host:
        return True
    if any(host == h or host.endswith('.' + h) for h in policy.suspicious_hosts):
        return True
    return any(re.search(pattern, url, re.IGNORECASE) for pattern in policy.placeholder_patterns)


def check_url_reachable(url: str, timeout: float = 10, session: Optional[requests.Session] = None) -> bool:
    """HEAD the URL (GET if HEAD is refused) and require an image content type"""
    http = session or requests
    try:
        response = http.head(url, allow_redirects=True, timeout=timeout)
        if response.status_code in (403, 405):
            response = http.get(url, allow_redirects=True, timeout=timeout, stream=True)
            response.close()
    except requests.exceptions.RequestException as e:
        logger.debug(f"Unreachable image {url}: {e}")
        return False

    if response.status_code >= 400:
        logger.debug(f"Image {url} answered HTTP {response.status_code}")
        return False
    content_type = response.headers.get('Content-Type', '')
    return content_type.lower().startswith('image/')


def _tier3(confidence: float, reason: str, policy: VisualPolicy,
           source: Optional[KnownSource] = None) -> VisualConfidenceResult:
    low, high = policy.tier_range(3)
    return VisualConfidenceResult(
        tier=3,
        confidence=min(max(confidence, low), high),
        visual_type=VisualType.PLACEHOLDER,
        reason=reason,
        source=source.code if source else None,
    )


def resolve_source(image: ImageRef, policy: VisualPolicy):
    """
    Find the registry entry an image belongs to

    The URL host wins. A declared source only counts when it has no web
    domains (print archives scanned in-house) or when its domains include the
    URL host. Returns (source, reason) where reason explains a miss.
    """
    by_host = policy.source_for_url(image.url)
    declared = policy.source_by_code(image.source)

    if by_host is not None:
        return by_host, None
    if declared is not None:
        if not declared.domains:
            return declared, None
        return None, 'source_host_mismatch'
    return None, 'unrecognized_source'


def score_visual(image: Optional[ImageRef], policy: Optional[VisualPolicy] = None,
                 check_reachability: bool = False,
                 session: Optional[requests.Session] = None) -> VisualConfidenceResult:
    """Compute tier, confidence, visual type and reason for an image reference"""
    policy = policy or VisualPolicy()
    if image is None or not image.url:
        return _tier3(policy.tier3_no_image, 'no_image', policy)

    url = image.url.strip()
    if is_placeholder(url, policy):
        return _tier3(policy.tier3_placeholder, 'placeholder', policy)

    source, miss_reason = resolve_source(image, policy)
    if source is None:
        return _tier3(policy.tier3_unrecognized, miss_reason, policy)

    if image.rights_status == 'pending':
        return _tier3(policy.tier3_unrecognized, 'rights_pending', policy, source)

    if check_reachability and not check_url_reachable(url, policy.reachability_timeout, session):
        return _tier3(policy.tier3_unreachable, 'unreachable', policy, source)

    low, high = policy.tier_range(source.tier)
    confidence = min(max(source.base_confidence, low), high)
    visual_type = VisualType.ORIGINAL_POSTER if source.tier == 1 else VisualType.ARCHIVAL_STILL

    return VisualConfidenceResult(
        tier=source.tier,
        confidence=round(confidence, 4),
        visual_type=visual_type,
        reason='trusted_source' if source.tier == 1 else 'registered_archive',
        source=source.code,
        attribution=source.attribution if (source.tier == 2 or source.requires_attribution) else None,
    )


def needs_archive_card(result: VisualConfidenceResult) -> bool:
    return result.tier == 3


def determine_archive_reason(entity: Entity) -> ArchiveReason:
    """Why this entity has no trustworthy image"""
    image = entity.image
    if image.url and image.rights_status == 'pending':
        return ArchiveReason.PENDING_RIGHTS_CLEARANCE
    if image.url:
        # An image exists but it is a placeholder or from nowhere we trust
        return ArchiveReason.NO_VERIFIED_SOURCE
    if not image.searched_at:
        return ArchiveReason.NEVER_SEARCHED
    return ArchiveReason.SEARCHED_NOT_FOUND


def build_archive_card(entity: Entity, reason: Optional[ArchiveReason] = None) -> ArchiveCard:
    reason = reason or determine_archive_reason(entity)
    return ArchiveCard(
        reason=reason,
        reason_text=REASON_TEXT[reason],
        verification_status=VERIFICATION_LABEL[reason],
        display_title=entity.name,
        display_year=entity.year,
    )


def apply_visual(entity: Entity, result: VisualConfidenceResult) -> bool:
    """
    Write the result onto the entity's image metadata and attach or drop the card

    Returns True if the entity changed.
    """
    changed = entity.image.visual != result
    entity.image.visual = result

    if needs_archive_card(result):
        card = build_archive_card(entity)
        if entity.archive_card != card:
            entity.archive_card = card
            changed = True
    elif entity.archive_card is not None:
        entity.archive_card = None
        changed = True

    return changed
