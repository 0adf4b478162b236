"""
User-facing strings, kept in one place so they are easy to find and change.
"""

DOTA_UNAVAILABLE = "Dota is currently unavailable. Check `status` and try again later"
DOTA_PROFILE_UNAVAILABLE = "Profile couldn't be loaded, try again later"
DOTA_LASTMATCH_UNAVAILABLE = "Most recent match couldn't be loaded, try again later"
UNKNOWN_NAME = "Unknown"
STEAM_UNAVAILABLE = "Steam is not answering right now, try again later"
