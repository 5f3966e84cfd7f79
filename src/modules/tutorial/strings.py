"""
Localized UI strings.

Failure text shown to users is fixed per locale; technical detail goes to
the diagnostic log only.
"""

DEFAULT_LOCALE = "en"

ERROR_MESSAGE = "error_message"

STRINGS = {
    "en": {
        ERROR_MESSAGE: "Oops! Something went wrong while loading the image.",
    },
    "es": {
        ERROR_MESSAGE: "¡Vaya! Algo salió mal al cargar la imagen.",
    },
    "fr": {
        ERROR_MESSAGE: "Oups ! Une erreur est survenue lors du chargement de l'image.",
    },
    "de": {
        ERROR_MESSAGE: "Hoppla! Beim Laden des Bildes ist ein Fehler aufgetreten.",
    },
}


def get_string(key: str, locale: str = DEFAULT_LOCALE) -> str:
    """Look up key for locale, falling back to the base language, then English."""
    for candidate in (locale, locale.split("-")[0].split("_")[0], DEFAULT_LOCALE):
        table = STRINGS.get(candidate.lower())
        if table and key in table:
            return table[key]
    raise KeyError(key)
