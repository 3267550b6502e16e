"""Localized default texts used by the dispatch pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_LANGUAGE = "en"


@dataclass(frozen=True)
class Messages:
    general_error: str
    close_button: str = ""


_DEFAULT_MESSAGES: dict[str, Messages] = {
    "en": Messages(general_error="Something went wrong. Please try again.", close_button="Close"),
    "ru": Messages(general_error="Произошла ошибка", close_button="Закрыть"),
    "de": Messages(general_error="Es ist ein Fehler aufgetreten.", close_button="Schließen"),
    "es": Messages(general_error="Se produjo un error.", close_button="Cerrar"),
}


@dataclass
class MessageProvider:
    """Maps a language code to its texts, falling back to the default language."""

    default_language: str = DEFAULT_LANGUAGE
    catalog: dict[str, Messages] = field(default_factory=lambda: dict(_DEFAULT_MESSAGES))

    def messages(self, language: str | None) -> Messages:
        code = (language or "").strip().lower()
        # "pt-BR" -> "pt"
        code = code.split("-", 1)[0]
        if code in self.catalog:
            return self.catalog[code]
        if self.default_language in self.catalog:
            return self.catalog[self.default_language]
        return _DEFAULT_MESSAGES[DEFAULT_LANGUAGE]

    def general_error(self, language: str | None) -> str:
        return self.messages(language).general_error
