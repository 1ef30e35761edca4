import re
from urllib.parse import urlparse

DEFAULT_EXTENSION = ".mkv"
FALLBACK_NAME = "download"

_VIDEO_EXTENSIONS = "mkv|mp4|avi|mov|webm|mpg|mpeg"
_PATH_EXTENSION_RE = re.compile(rf"\.({_VIDEO_EXTENSIONS})$", re.IGNORECASE)
_URI_EXTENSION_RE = re.compile(rf"\.({_VIDEO_EXTENSIONS})(?:\?|$)", re.IGNORECASE)
_LANGUAGE_SUFFIX_RE = re.compile(r"^(.*?)\s-\s([^()]+?)\s*(\(\d{4}\))$")
_LANGUAGE_TOKEN_RE = re.compile(r"^[A-Z]{2,5}(?:\+(?:tit|sub))?$")
_BRACKETED_RE = re.compile(r"\[[^\]]+\]")
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9 ._()'\-,]")


def _build_transliteration():
    table = {}
    # Later groups win where a letter appears twice.
    groups = (
        # Czech and Slovak
        "á=a č=c ď=d é=e ě=e í=i ň=n ó=o ř=r š=s ť=t ú=u ů=u ý=y ž=z "
        "Á=A Č=C Ď=D É=E Ě=E Í=I Ň=N Ó=O Ř=R Š=S Ť=T Ú=U Ů=U Ý=Y Ž=Z "
        "ľ=l ĺ=l ô=o ŕ=r Ĺ=L Ľ=L Ŕ=R Ô=O Ä=A ä=a",
        # Polish
        "ą=a ć=c ę=e ł=l ń=n ś=s ź=z ż=z Ą=A Ć=C Ę=E Ł=L Ń=N Ś=S Ź=Z Ż=Z",
        # German
        "ä=ae ö=oe ü=ue ß=ss Ä=Ae Ö=Oe Ü=Ue",
        # French
        "à=a â=a æ=ae ç=c é=e è=e ê=e ë=e ï=i î=i ô=o œ=oe ù=u û=u ü=u ÿ=y "
        "À=A Â=A Æ=Ae Ç=C É=E È=E Ê=E Ë=E Ï=I Î=I Ô=O Œ=Oe Ù=U Û=U Ü=U Ÿ=Y",
        # Spanish and Portuguese
        "ñ=n Ñ=N ã=a Ã=A õ=o Õ=O",
        # Scandinavian
        "å=a Å=A ø=o Ø=O æ=ae Æ=Ae",
        # Hungarian
        "ő=o ű=u Ő=O Ű=U",
    )
    for group in groups:
        for pair in group.split():
            source, _, target = pair.partition("=")
            table[ord(source)] = target
    return table


_TRANSLITERATION = _build_transliteration()


def strip_language_list(title):
    """'Movie - EN, CZ, EN+tit (2024)' -> 'Movie (2024)' when every token is a language code."""
    title = (title or "").strip()
    match = _LANGUAGE_SUFFIX_RE.match(title)
    if not match:
        return title
    prefix, languages, year = match.groups()
    tokens = [token.strip() for token in languages.split(",")]
    if not all(token and _LANGUAGE_TOKEN_RE.match(token) for token in tokens):
        return title
    if len(tokens) >= 3 or any("+" in token for token in tokens):
        return f"{prefix.strip()} {year}"
    return title


def sanitize_filename(name):
    name = re.sub(r"\s+", " ", name or "")
    name = name.translate(_TRANSLITERATION)
    name = _BRACKETED_RE.sub("", name)
    name = name.replace("/", " ").replace("\\", " ")
    name = _UNSAFE_RE.sub("", name)
    return re.sub(r" {2,}", " ", name).strip()


def extension_for_uri(uri):
    uri = uri or ""
    path = urlparse(uri).path or ""
    match = _PATH_EXTENSION_RE.search(path) or _URI_EXTENSION_RE.search(uri)
    if match:
        return "." + match.group(1).lower()
    return DEFAULT_EXTENSION


def derive_output_filename(title, uri):
    name = sanitize_filename(strip_language_list(title)) or FALLBACK_NAME
    return name + extension_for_uri(uri)
