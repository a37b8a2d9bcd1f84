"""
Selfie Capture — readiness-gated selfie capture for undertone analysis.
Frame the face in the on-screen oval; each live frame is checked for a
centred, well-lit, sharp, cast-free face before the shutter is enabled.
"""

__version__ = "0.1.0"
__author__ = "selfie_capture"
