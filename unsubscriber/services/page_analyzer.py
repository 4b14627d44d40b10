"""
Structural analysis of unsubscribe pages.

Turns raw HTML into a description of forms, fields, buttons and candidate
unsubscribe links that the AI directive step can reason about.
"""
import logging
import re
from typing import Optional

from bs4 import BeautifulSoup
from bs4.element import PreformattedString
from pydantic import BaseModel

logger = logging.getLogger(__name__)

UNSUBSCRIBE_KEYWORDS = [
    "unsubscribe",
    "opt out",
    "opt-out",
    "remove",
    "stop email",
    "manage preference",
    "email preference",
]

PAGE_TEXT_LIMIT = 500
COMPACT_CONTEXT_LIMIT = 300

CSS_IDENTIFIER = re.compile(r"-?[A-Za-z_][A-Za-z0-9_-]*")


class PageParseError(Exception):
    """Raised when a page cannot be parsed into a PageAnalysis."""


class SelectOption(BaseModel):
    value: Optional[str] = None
    text: str = ""
    selected: bool = False


class PageField(BaseModel):
    element: str
    type: Optional[str] = None
    name: Optional[str] = None
    id: Optional[str] = None
    value: Optional[str] = None
    selector: str
    required: bool = False
    placeholder: Optional[str] = None
    options: Optional[list[SelectOption]] = None


class PageButton(BaseModel):
    tag: str
    type: str = "button"
    id: Optional[str] = None
    class_name: Optional[str] = None
    name: Optional[str] = None
    value: Optional[str] = None
    text: str = ""
    selector: str
    is_unsubscribe: bool = False


class PageForm(BaseModel):
    index: int
    id: Optional[str] = None
    class_name: Optional[str] = None
    action: Optional[str] = None
    method: str = "post"
    fields: list[PageField] = []
    submit_buttons: list[PageButton] = []


class PageLink(BaseModel):
    href: Optional[str] = None
    text: str = ""
    id: Optional[str] = None
    class_name: Optional[str] = None
    selector: str
    is_unsubscribe: bool = True


class PageAnalysis(BaseModel):
    forms: list[PageForm] = []
    buttons: list[PageButton] = []
    links: list[PageLink] = []
    page_text: str = ""


def analyze(html: str) -> PageAnalysis:
    """Parse an HTML document into a PageAnalysis."""
    if not isinstance(html, str):
        raise PageParseError(f"Expected HTML text, got {type(html).__name__}")
    if not html.strip():
        raise PageParseError("Empty document")

    try:
        soup = BeautifulSoup(html, "html.parser")
    except Exception as e:
        logger.error("Failed to parse HTML: %s", e)
        raise PageParseError(str(e)) from e

    analysis = PageAnalysis(
        forms=[_parse_form(form, index) for index, form in enumerate(soup.find_all("form"))],
        buttons=[
            _parse_button(button)
            for button in soup.select("button, input[type=submit], input[type=button]")
        ],
        links=_extract_unsubscribe_links(soup),
        page_text=_extract_visible_text(soup),
    )
    logger.debug(
        "Analyzed page: %d forms, %d buttons, %d unsubscribe links",
        len(analysis.forms), len(analysis.buttons), len(analysis.links),
    )
    return analysis


def build_selector(tag: str, id: Optional[str], name: Optional[str], type: Optional[str] = None) -> str:
    """Build a CSS selector, preferring id, then name/type attributes."""
    if id:
        return id_selector(id, tag)
    if name and type:
        return f"{tag}[name='{_quote(name)}'][type='{_quote(type)}']"
    if name:
        return f"{tag}[name='{_quote(name)}']"
    if type:
        return f"{tag}[type='{_quote(type)}']"
    return tag


def id_selector(id: str, tag: str = "") -> str:
    """`#id` when the id is a plain CSS identifier, else an attribute match."""
    if CSS_IDENTIFIER.fullmatch(id):
        return f"#{id}"
    return f"{tag}[id='{_quote(id)}']"


def looks_like_unsubscribe(
    text: Optional[str],
    class_name: Optional[str] = None,
    id: Optional[str] = None,
    href: Optional[str] = None,
) -> bool:
    haystacks = [(value or "").lower() for value in (text, class_name, id, href)]
    return any(
        keyword in haystack
        for keyword in UNSUBSCRIBE_KEYWORDS
        for haystack in haystacks
    )


def simplify(analysis: PageAnalysis) -> dict:
    """Reduce an analysis to the compact view sent to the AI model."""
    return {
        "forms": [
            {
                "index": form.index,
                "action": form.action,
                "method": form.method,
                "fields": [
                    {
                        "type": field.type or field.element,
                        "name": field.name,
                        "selector": field.selector,
                        "required": field.required,
                        "placeholder": field.placeholder,
                        "options": (
                            [{"value": o.value, "text": o.text} for o in field.options]
                            if field.options is not None
                            else None
                        ),
                    }
                    for field in form.fields
                ],
                "submit_buttons": [
                    {"text": button.text, "selector": button.selector}
                    for button in form.submit_buttons
                ],
            }
            for form in analysis.forms
        ],
        "standalone_buttons": [
            {"text": button.text, "selector": button.selector}
            for button in analysis.buttons
            if button.is_unsubscribe
        ],
        "unsubscribe_links": [
            {"text": link.text, "href": link.href, "selector": link.selector}
            for link in analysis.links
        ],
        "page_context": analysis.page_text[:COMPACT_CONTEXT_LIMIT],
    }


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _attr(element, name: str) -> Optional[str]:
    value = element.get(name)
    if isinstance(value, list):
        # bs4 splits multi-valued attributes such as class
        value = " ".join(value)
    return value


def _parse_form(form, index: int) -> PageForm:
    method = _attr(form, "method") or "post"
    return PageForm(
        index=index,
        id=_attr(form, "id"),
        class_name=_attr(form, "class"),
        action=_attr(form, "action"),
        method=method.lower(),
        fields=_extract_inputs(form) + _extract_selects(form) + _extract_textareas(form),
        submit_buttons=_extract_submit_buttons(form),
    )


def _extract_inputs(form) -> list[PageField]:
    fields = []
    for element in form.find_all("input"):
        type_ = _attr(element, "type") or "text"
        id_ = _attr(element, "id")
        name = _attr(element, "name")
        fields.append(PageField(
            element="input",
            type=type_,
            name=name,
            id=id_,
            value=_attr(element, "value"),
            required=element.has_attr("required"),
            placeholder=_attr(element, "placeholder"),
            selector=build_selector("input", id_, name, type_),
        ))
    return fields


def _extract_selects(form) -> list[PageField]:
    fields = []
    for element in form.find_all("select"):
        id_ = _attr(element, "id")
        name = _attr(element, "name")
        options = [
            SelectOption(
                value=_attr(option, "value"),
                text=option.get_text().strip(),
                selected=option.has_attr("selected"),
            )
            for option in element.find_all("option")
        ]
        fields.append(PageField(
            element="select",
            name=name,
            id=id_,
            required=element.has_attr("required"),
            options=options,
            selector=build_selector("select", id_, name),
        ))
    return fields


def _extract_textareas(form) -> list[PageField]:
    fields = []
    for element in form.find_all("textarea"):
        id_ = _attr(element, "id")
        name = _attr(element, "name")
        fields.append(PageField(
            element="textarea",
            name=name,
            id=id_,
            required=element.has_attr("required"),
            placeholder=_attr(element, "placeholder"),
            selector=build_selector("textarea", id_, name),
        ))
    return fields


def _extract_submit_buttons(form) -> list[PageButton]:
    buttons = [
        _parse_button(button)
        for button in form.find_all("button")
        if (_attr(button, "type") or "submit").lower() == "submit"
    ]
    buttons += [_parse_button(button) for button in form.select("input[type=submit]")]
    return buttons


def _parse_button(element) -> PageButton:
    tag = element.name
    type_ = _attr(element, "type") or "button"
    id_ = _attr(element, "id")
    class_name = _attr(element, "class")
    name = _attr(element, "name")
    value = _attr(element, "value")
    text = element.get_text().strip()
    if not text and tag == "input":
        text = (value or "").strip()

    return PageButton(
        tag=tag,
        type=type_,
        id=id_,
        class_name=class_name,
        name=name,
        value=value,
        text=text,
        selector=build_selector(tag, id_, name, type_),
        is_unsubscribe=looks_like_unsubscribe(text, class_name, id_),
    )


def _extract_unsubscribe_links(soup) -> list[PageLink]:
    links = []
    for element in soup.find_all("a"):
        href = _attr(element, "href")
        text = element.get_text().strip()
        id_ = _attr(element, "id")
        class_name = _attr(element, "class")
        if not looks_like_unsubscribe(text, class_name, id_, href):
            continue
        links.append(PageLink(
            href=href,
            text=text,
            id=id_,
            class_name=class_name,
            selector=_link_selector(id_, href),
        ))
    return links


def _link_selector(id_: Optional[str], href: Optional[str]) -> str:
    if id_:
        return id_selector(id_, "a")
    if href:
        return f"a[href='{_quote(href)}']"
    return "a"


def _extract_visible_text(soup) -> str:
    root = soup.body or soup
    text = " ".join(
        chunk.strip()
        for chunk in root.find_all(string=True)
        if not isinstance(chunk, PreformattedString)
        and chunk.parent.name not in ("script", "style", "noscript", "template")
        and chunk.strip()
    )
    return text[:PAGE_TEXT_LIMIT]
