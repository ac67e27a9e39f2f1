from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any

from bs4 import BeautifulSoup, Tag

from app.opsdesk.constants import ANSWER_LETTERS

_BLOCK_ID_RE = re.compile(r"^q(\d+)-block$")
_ANSWER_RE = re.compile(r"正确答案\s*[：:]\s*([A-Da-d])")
_SECTION_TEXT_RE = re.compile(r"^第[一二三四五六七八九十百\d]+(?:部分|章)")
_LEADING_NUMBER_RE = re.compile(r"^\s*\d+\s*[\.、．:：)）]\s*")
_WS_RE = re.compile(r"\s+")

MIN_DESCRIPTION_LEN = 10
MIN_EXPLANATION_LEN = 10
DEFAULT_SET_NAME = "未命名题库"


@dataclass
class ParsedQuestion:
    questionNumber: int
    section: str
    questionText: str
    optionA: str
    optionB: str
    optionC: str
    optionD: str
    correctAnswer: str
    explanation: str


@dataclass
class ParsedQuestionSet:
    name: str
    description: str | None
    questions: list[ParsedQuestion] = field(default_factory=list)


@dataclass
class ParseResult:
    success: bool
    data: ParsedQuestionSet | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": asdict(self.data) if self.data is not None else None,
            "warnings": list(self.warnings),
            "error": self.error,
        }


def clean_text(value: str | None) -> str:
    """Collapse whitespace; entity decoding already happened in the HTML parser."""
    if not value:
        return ""
    return _WS_RE.sub(" ", value.replace("\xa0", " ")).strip()


def html_to_text(fragment: str | None) -> str:
    """Strip tags and decode entities from a raw HTML fragment."""
    if not fragment:
        return ""
    return clean_text(BeautifulSoup(fragment, "html.parser").get_text(" "))


def _text(tag: Tag | None) -> str:
    if tag is None:
        return ""
    return clean_text(tag.get_text(" "))


def section_for_number(number: int) -> str:
    if number <= 10:
        return "第一部分"
    if number <= 20:
        return "第二部分"
    if number <= 30:
        return "第三部分"
    if number <= 40:
        return "第四部分"
    if number <= 50:
        return "第五部分"
    return "第六部分"


def _has_class(tag: Tag, fragment: str) -> bool:
    return any(fragment in c for c in (tag.get("class") or []))


def _is_question_block(tag: Tag) -> bool:
    return tag.name == "div" and "question-block" in (tag.get("class") or [])


def _inside_question_block(tag: Tag) -> bool:
    return tag.find_parent(_is_question_block) is not None


def _section_heading(tag: Tag) -> str | None:
    if tag.name in ("h2", "h3"):
        return _text(tag) or None
    if tag.name in ("div", "p", "h4") and not _is_question_block(tag):
        text = _text(tag)
        if _has_class(tag, "section") and text and len(text) <= 60:
            return text
        if tag.name in ("p", "h4") and _SECTION_TEXT_RE.match(text) and len(text) <= 60:
            return text
    return None


def _extract_title(soup: BeautifulSoup) -> str:
    for name in ("h1", "title"):
        tag = soup.find(name)
        text = _text(tag)
        if text:
            return text
    return ""


def _extract_description(soup: BeautifulSoup) -> str | None:
    candidates: list[Tag] = []
    centered = soup.find("p", style=re.compile(r"text-align\s*:\s*center"))
    if centered is not None:
        candidates.append(centered)
    header = soup.find("header")
    if header is not None:
        candidates.extend(header.find_all("p"))
    h1 = soup.find("h1")
    if h1 is not None:
        nxt = h1.find_next("p")
        if nxt is not None:
            candidates.append(nxt)

    for tag in candidates:
        if _inside_question_block(tag) or _has_class(tag, "question-text") or _has_class(tag, "feedback"):
            continue
        text = _text(tag)
        if len(text) > MIN_DESCRIPTION_LEN:
            return text
    return None


def _parse_options(block: Tag) -> dict[str, str]:
    options: dict[str, str] = {}
    option_list = block.find("ul", class_="options-list") or block.find(["ul", "ol"])
    if option_list is None:
        return options
    for idx, li in enumerate(option_list.find_all("li", recursive=False)):
        inp = li.find("input")
        letter = str(inp.get("value") or "").strip().upper() if inp is not None else ""
        if letter not in ANSWER_LETTERS:
            if idx >= len(ANSWER_LETTERS):
                continue
            letter = ANSWER_LETTERS[idx]
        text = _text(li)
        text = re.sub(rf"^{letter}\s*[\.、．:：)）]\s*", "", text)
        options[letter] = text
    return options


def _parse_block(block: Tag, number: int, section: str | None, warnings: list[str]) -> ParsedQuestion | None:
    question_text = _text(block.find(class_="question-text"))
    question_text = _LEADING_NUMBER_RE.sub("", question_text)
    if not question_text:
        warnings.append(f"第{number}题: 缺少题目内容，已跳过")
        return None

    options = _parse_options(block)
    missing = [letter for letter in ANSWER_LETTERS if not options.get(letter)]
    if missing:
        warnings.append(f"第{number}题: 缺少选项 {', '.join(missing)}")

    feedback = _text(block.find(class_="feedback"))
    answer = ""
    m = _ANSWER_RE.search(feedback)
    if m:
        answer = m.group(1).upper()
    else:
        raw_answer = str(block.get("data-answer") or "").strip().upper()
        if raw_answer:
            answer = raw_answer
    if not answer:
        warnings.append(f"第{number}题: 缺少正确答案")
    elif answer not in ANSWER_LETTERS:
        warnings.append(f"第{number}题: 正确答案无效 ({answer})")

    if len(feedback) < MIN_EXPLANATION_LEN:
        warnings.append(f"第{number}题: 解析内容过短")

    return ParsedQuestion(
        questionNumber=number,
        section=section or section_for_number(number),
        questionText=question_text,
        optionA=options.get("A", ""),
        optionB=options.get("B", ""),
        optionC=options.get("C", ""),
        optionD=options.get("D", ""),
        correctAnswer=answer,
        explanation=feedback,
    )


def parse_question_html(html: str | None, set_name: str | None = None) -> ParseResult:
    """
    Extract a question bank from pasted HTML.

    Expected markup, per question::

        <div class="question-block" id="q12-block">
          <p class="question-text">12. ...</p>
          <ul class="options-list"><li><label><input value="A"> ...</label></li>...</ul>
          <p class="feedback">正确答案：B ...</p>
        </div>

    Never raises: malformed markup yields success=False with an error, and
    per-question problems are reported as warnings.
    """
    if not isinstance(html, str) or not html.strip():
        return ParseResult(success=False, error="HTML内容为空")
    if not isinstance(set_name, str):
        set_name = None

    try:
        soup = BeautifulSoup(html, "html.parser")
        title = _extract_title(soup) or (set_name or "").strip() or DEFAULT_SET_NAME
        description = _extract_description(soup)

        warnings: list[str] = []
        questions: list[ParsedQuestion] = []
        seen_numbers: set[int] = set()
        current_section: str | None = None
        position = 0

        for tag in soup.find_all(True):
            if _is_question_block(tag):
                position += 1
                m = _BLOCK_ID_RE.match(str(tag.get("id") or ""))
                if m:
                    number = int(m.group(1))
                else:
                    try:
                        number = int(str(tag.get("data-number")))
                    except ValueError:
                        number = position
                if number in seen_numbers:
                    warnings.append(f"第{number}题: 题号重复，已跳过")
                    continue
                parsed = _parse_block(tag, number, current_section, warnings)
                if parsed is not None:
                    seen_numbers.add(number)
                    questions.append(parsed)
                continue
            if _inside_question_block(tag):
                continue
            heading = _section_heading(tag)
            if heading:
                current_section = heading

        if not questions:
            return ParseResult(success=False, warnings=warnings, error="未找到任何题目，请检查HTML格式")

        questions.sort(key=lambda q: q.questionNumber)
        return ParseResult(
            success=True,
            data=ParsedQuestionSet(name=title, description=description, questions=questions),
            warnings=warnings,
        )
    except Exception as e:
        return ParseResult(success=False, error=f"HTML解析失败: {e}")
