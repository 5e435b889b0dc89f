"""Line-in capture bridge that streams PCM audio to an audio server found over mDNS."""

__version__ = "1.9.1"