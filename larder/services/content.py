from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from functools import lru_cache
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from larder.domain.messages import EmailPayload, PushPayload
from larder.persistence.repos.inventory import ExpiringItem


SUPPORTED_LANGUAGES = ("hu", "de", "en")
TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"


def parse_language(value: str | None, default: str = "hu") -> str:
    # Accept locale tags like "de-AT"; anything unknown falls back to English.
    if not value:
        value = default
    code = value.strip().lower().replace("_", "-").split("-")[0]
    if code in ("hu", "de"):
        return code
    return "en"


def _pick(language: str, options: dict[str, str]) -> str:
    return options.get(language, options["en"])


_WEEKLY_TITLE = {"hu": "Heti összefoglaló", "de": "Wochenzusammenfassung", "en": "Weekly Summary"}
_WEEKLY_NONE = {
    "hu": "Nincs lejáró termék a készletedben. Szép hetet!",
    "de": "Keine ablaufenden Produkte in Ihrem Bestand. Schöne Woche!",
    "en": "No expiring products in your inventory. Have a great week!",
}
_WEEKLY_ONE = {
    "hu": "1 termék fog lejárni a következő {days} napban.",
    "de": "1 Produkt läuft in den nächsten {days} Tagen ab.",
    "en": "1 product will expire within the next {days} days.",
}
_WEEKLY_MANY = {
    "hu": "{count} termék fog lejárni a következő {days} napban.",
    "de": "{count} Produkte laufen in den nächsten {days} Tagen ab.",
    "en": "{count} products will expire within the next {days} days.",
}

_SHOPPING_TITLE = {"hu": "Bevásárlólista frissítve", "de": "Einkaufsliste aktualisiert", "en": "Shopping List Updated"}
_SHOPPING_ONE = {
    "hu": '1 új elem került a(z) "{name}" bevásárlólistához.',
    "de": '1 neues Element wurde zur Einkaufsliste "{name}" hinzugefügt.',
    "en": '1 new item was added to the "{name}" shopping list.',
}
_SHOPPING_MANY = {
    "hu": '{count} új elem került a(z) "{name}" bevásárlólistához.',
    "de": '{count} neue Elemente wurden zur Einkaufsliste "{name}" hinzugefügt.',
    "en": '{count} new items were added to the "{name}" shopping list.',
}

_TEST_TITLE = {"hu": "Larder teszt értesítés", "de": "Larder Testbenachrichtigung", "en": "Larder test notification"}
_TEST_BODY = {
    "hu": "Ez egy teszt push értesítés a Lardertől.",
    "de": "Dies ist eine Test-Push-Benachrichtigung von Larder.",
    "en": "This is a test push notification from Larder.",
}
_OPEN_ACTION = {"hu": "Larder megnyitása", "de": "Larder öffnen", "en": "Open Larder"}


def weekly_push_content(language: str, expiring_count: int, *, threshold_days: int = 14, url: str = "/") -> PushPayload:
    if expiring_count == 0:
        body = _pick(language, _WEEKLY_NONE)
    elif expiring_count == 1:
        body = _pick(language, _WEEKLY_ONE).format(days=threshold_days)
    else:
        body = _pick(language, _WEEKLY_MANY).format(count=expiring_count, days=threshold_days)
    return PushPayload(
        title=_pick(language, _WEEKLY_TITLE),
        body=body,
        url=url,
        action_title=_pick(language, _OPEN_ACTION),
    )


def shopping_list_push_content(language: str, list_name: str, item_count: int, *, url: str = "/") -> PushPayload:
    template = _SHOPPING_ONE if item_count == 1 else _SHOPPING_MANY
    return PushPayload(
        title=_pick(language, _SHOPPING_TITLE),
        body=_pick(language, template).format(count=item_count, name=list_name),
        url=url,
        action_title=_pick(language, _OPEN_ACTION),
    )


def diagnostic_push_content(language: str, *, url: str = "/") -> PushPayload:
    return PushPayload(
        title=_pick(language, _TEST_TITLE),
        body=_pick(language, _TEST_BODY),
        url=url,
        action_title=_pick(language, _OPEN_ACTION),
    )


@dataclass(frozen=True)
class _EmailStrings:
    subject: str
    greeting: str
    intro: str
    expired_header: str
    expiring_header: str
    no_items: str
    expires_label: str
    auto_message: str
    rights: str


_EMAIL_STRINGS = {
    "hu": _EmailStrings(
        subject="Larder - Heti összefoglaló",
        greeting="Szia{name}!",
        intro="Íme a készleted heti összefoglalója.",
        expired_header="Lejárt termékek",
        expiring_header="Hamarosan lejáró termékek",
        no_items="Nincs lejárt vagy hamarosan lejáró termék a készletedben. Szép hetet!",
        expires_label="Lejárat",
        auto_message="Ez egy automatikus üzenet, kérjük ne válaszoljon erre az e-mailre.",
        rights="Minden jog fenntartva.",
    ),
    "de": _EmailStrings(
        subject="Larder - Wochenzusammenfassung",
        greeting="Hallo{name}!",
        intro="Hier ist die wöchentliche Zusammenfassung Ihres Bestands.",
        expired_header="Abgelaufene Produkte",
        expiring_header="Bald ablaufende Produkte",
        no_items="Keine abgelaufenen oder bald ablaufenden Produkte in Ihrem Bestand. Schöne Woche!",
        expires_label="Ablaufdatum",
        auto_message="Dies ist eine automatische Nachricht, bitte antworten Sie nicht auf diese E-Mail.",
        rights="Alle Rechte vorbehalten.",
    ),
    "en": _EmailStrings(
        subject="Larder - Weekly Summary",
        greeting="Hi{name}!",
        intro="Here is the weekly summary of your inventory.",
        expired_header="Expired products",
        expiring_header="Expiring soon",
        no_items="No expired or expiring products in your inventory. Have a great week!",
        expires_label="Expires",
        auto_message="This is an automated message, please do not reply to this email.",
        rights="All rights reserved.",
    ),
}


@lru_cache
def get_template_environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "xml"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_weekly_summary_email(
    *,
    language: str,
    name: str | None,
    expired: list[ExpiringItem],
    expiring_soon: list[ExpiringItem],
    today: date,
) -> EmailPayload:
    strings = _EMAIL_STRINGS.get(language, _EMAIL_STRINGS["en"])
    display_name = f" {name.strip()}" if name and name.strip() else ""
    context = {
        "language": language,
        "strings": strings,
        "greeting": strings.greeting.format(name=display_name),
        "expired": expired,
        "expiring_soon": expiring_soon,
        "year": today.year,
    }
    env = get_template_environment()
    return EmailPayload(
        subject=strings.subject,
        html_body=env.get_template("weekly_summary.html").render(**context),
        text_body=env.get_template("weekly_summary.txt").render(**context),
    )
