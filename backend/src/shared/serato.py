"""
Serato integration - the track-match oracle used as proof of mission completion.

Usage:
    client = SeratoClient()
    tokens = await client.refresh_access_token(refresh_token)
    result = await client.verify_track_play(tokens['accessToken'], {'title': ..., 'artist': ...}, start, end)
"""
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from .config import config
from .errors import TransientVerificationError
from .logging import logger
from .models import VerificationResult
from .utils import parse_timestamp, utc_now

# Matching tolerances
DURATION_TOLERANCE_SECONDS = 10
BPM_TOLERANCE = 2

# Professional gig heuristics
GIG_MIN_TRACKS = 10
GIG_MAX_GAP_SECONDS = 300
GIG_MIN_TRACK_SECONDS = 60
GIG_MAX_TRACK_SECONDS = 600


class SeratoClient:
    """
    Client for the Serato OAuth and play-history APIs.
    """

    def __init__(
        self,
        client_id: str = None,
        client_secret: str = None,
        redirect_uri: str = None,
        api_base_url: str = None,
        oauth_url: str = None,
        timeout: float = None,
    ):
        self.client_id = client_id or config.SERATO_CLIENT_ID
        self.client_secret = client_secret or config.SERATO_CLIENT_SECRET
        self.redirect_uri = redirect_uri or config.SERATO_REDIRECT_URI
        self.api_base_url = (api_base_url or config.SERATO_API_BASE_URL).rstrip('/')
        self.oauth_url = (oauth_url or config.SERATO_OAUTH_URL).rstrip('/')
        self.timeout = timeout or config.ORACLE_TIMEOUT_SECONDS

    # =========================================================================
    # OAuth
    # =========================================================================

    def generate_auth_url(self, user_id: str, state: str = None) -> str:
        """Build the authorization URL a runner visits to link their Serato account."""
        params = {
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'response_type': 'code',
            'scope': 'play_history read_profile',
            'state': state or f"user_{user_id}_{secrets.token_hex(16)}",
        }
        return f"{self.oauth_url}/authorize?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str) -> Dict[str, Any]:
        data = await self._post_token({
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'code': code,
            'grant_type': 'authorization_code',
            'redirect_uri': self.redirect_uri,
        })
        return self._token_result(data)

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Refresh an expired access token.

        Returns:
            Dict with accessToken, refreshToken, expiresAt and tokenType. The
            previous refresh token is kept when Serato does not issue a new one.
        """
        data = await self._post_token({
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'refresh_token': refresh_token,
            'grant_type': 'refresh_token',
        })
        return self._token_result(data, fallback_refresh_token=refresh_token)

    def _token_result(self, data: Dict[str, Any], fallback_refresh_token: str = None) -> Dict[str, Any]:
        expires_in = data.get('expires_in')
        return {
            'accessToken': data['access_token'],
            'refreshToken': data.get('refresh_token') or fallback_refresh_token,
            'expiresAt': utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None,
            'tokenType': data.get('token_type'),
        }

    async def _post_token(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(f"{self.oauth_url}/token", json=payload) as resp:
                    resp.raise_for_status()
                    return await resp.json()
        except aiohttp.ClientError as e:
            logger.error(f"Serato token request failed: {e}")
            raise TransientVerificationError('Failed to obtain Serato access token') from e

    # =========================================================================
    # Play history
    # =========================================================================

    async def _get(self, access_token: str, path: str, params: Dict[str, Any] = None) -> Dict[str, Any]:
        headers = {
            'Authorization': f"Bearer {access_token}",
            'Content-Type': 'application/json',
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(f"{self.api_base_url}{path}", headers=headers, params=params) as resp:
                    resp.raise_for_status()
                    return await resp.json()
        except aiohttp.ClientError as e:
            logger.error(f"Serato request {path} failed: {e}")
            raise TransientVerificationError(f"Serato request {path} failed") from e

    async def get_play_history(self, access_token: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        data = await self._get(access_token, '/play-history', {
            'start_date': start.isoformat(),
            'end_date': end.isoformat(),
            'include_track_details': 'true',
            'include_venue_info': 'true',
        })
        return data.get('tracks') or []

    async def get_user_profile(self, access_token: str) -> Dict[str, Any]:
        return await self._get(access_token, '/profile')

    async def verify_track_play(
        self,
        access_token: str,
        requirement: Dict[str, Any],
        start: datetime,
        end: datetime
    ) -> VerificationResult:
        """
        Check whether a track matching `requirement` was played between start and end.
        The first matching track in the play history wins.
        """
        play_history = await self.get_play_history(access_token, start, end)

        for track in play_history:
            if self.track_matches_requirements(track, requirement):
                return VerificationResult(
                    track_found=True,
                    confidence=self.calculate_confidence(track, requirement),
                    details=track,
                    play_time=parse_timestamp(track.get('played_at')),
                    duration=track.get('duration') or 0,
                    venue=track.get('venue'),
                )

        return VerificationResult()

    # =========================================================================
    # Matching
    # =========================================================================

    @staticmethod
    def track_matches_requirements(track: Dict[str, Any], requirement: Dict[str, Any]) -> bool:
        """
        Check if a played track satisfies the mission's track requirement.

        Title/artist/album are case-insensitive containment checks, ISRC and
        key must match exactly, duration within ±10s and BPM within ±2.
        Fields missing on the played track are not held against it, except
        title and artist.
        """
        title = requirement.get('title')
        artist = requirement.get('artist')
        album = requirement.get('album')
        isrc = requirement.get('isrc')
        duration = requirement.get('duration')
        bpm = requirement.get('bpm')
        key = requirement.get('key')

        if title and title.lower() not in str(track.get('title') or '').lower():
            return False

        if artist and artist.lower() not in str(track.get('artist') or '').lower():
            return False

        if album and track.get('album') and album.lower() not in track['album'].lower():
            return False

        if isrc and track.get('isrc') and track['isrc'] != isrc:
            return False

        if duration and track.get('duration'):
            if abs(float(track['duration']) - float(duration)) > DURATION_TOLERANCE_SECONDS:
                return False

        if bpm and track.get('bpm'):
            if abs(float(track['bpm']) - float(bpm)) > BPM_TOLERANCE:
                return False

        if key and track.get('key') and track['key'] != key:
            return False

        return True

    @staticmethod
    def calculate_confidence(track: Dict[str, Any], requirement: Dict[str, Any]) -> float:
        """
        Score a match on a 0-100 scale.

        Weights: title 40 (30 on partial), artist 30 (20 on partial), ISRC 20,
        duration 10 (5 within 5s). The points earned are divided by the
        maximum points of the checks that applied, so an exact match on every
        applicable field scores 100.
        """
        confidence = 0
        possible = 0

        track_title = str(track.get('title') or '').lower()
        track_artist = str(track.get('artist') or '').lower()

        if requirement.get('title'):
            possible += 40
            wanted = requirement['title'].lower()
            if track_title == wanted:
                confidence += 40
            elif wanted in track_title:
                confidence += 30

        if requirement.get('artist'):
            possible += 30
            wanted = requirement['artist'].lower()
            if track_artist == wanted:
                confidence += 30
            elif wanted in track_artist:
                confidence += 20

        if requirement.get('isrc') and track.get('isrc'):
            possible += 20
            if track['isrc'] == requirement['isrc']:
                confidence += 20

        if requirement.get('duration') and track.get('duration'):
            possible += 10
            diff = abs(float(track['duration']) - float(requirement['duration']))
            if diff <= 2:
                confidence += 10
            elif diff <= 5:
                confidence += 5

        return confidence / possible * 100 if possible else 0

    @staticmethod
    def is_professional_gig(play_history: List[Dict[str, Any]], start: datetime, end: datetime) -> bool:
        """
        Heuristic for a real set: enough tracks inside the window, played back
        to back, with plausible durations and venue information.
        """
        if not play_history:
            return False

        gig_tracks = []
        for track in play_history:
            played_at = parse_timestamp(track.get('played_at'))
            if played_at and start <= played_at <= end:
                gig_tracks.append((played_at, track))

        if len(gig_tracks) < GIG_MIN_TRACKS:
            return False

        for (prev_time, _), (curr_time, _) in zip(gig_tracks, gig_tracks[1:]):
            gap = (curr_time - prev_time).total_seconds()
            if gap < 0 or gap > GIG_MAX_GAP_SECONDS:
                return False

        for _, track in gig_tracks:
            duration = track.get('duration') or 0
            if not GIG_MIN_TRACK_SECONDS <= duration <= GIG_MAX_TRACK_SECONDS:
                return False

        return any(track.get('venue') for _, track in gig_tracks)
