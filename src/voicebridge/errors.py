"""
Error taxonomy for the voice bridge.

These errors are raised inside the audio and upstream clients and converted to
local fallbacks (apology text, tone/silence frames, no-op) at the call site.
Only a telephony stop or transport closure ends a call.
"""


class VoiceBridgeError(Exception):
    """Base class for voice bridge errors."""
    pass


class MalformedContainer(VoiceBridgeError, ValueError):
    """Audio container is missing its header, format chunk or data chunk."""
    pass


class UnsupportedFormat(VoiceBridgeError, ValueError):
    """Audio container uses an encoding/bit-depth combination we cannot decode."""
    pass


class UpstreamUnavailable(VoiceBridgeError):
    """Recognizer, reply or synthesis service failed or returned a bad status."""
    pass


class UpstreamTimeout(UpstreamUnavailable):
    """Upstream call did not complete within its configured bound."""
    pass


class TransportClosed(VoiceBridgeError):
    """Telephony peer went away mid-delivery."""
    pass
