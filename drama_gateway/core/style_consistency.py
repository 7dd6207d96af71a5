"""
风格一致性校验模块
Rewrites an image prompt so it carries the project's style tag and reference
work exactly once, dropping segments that conflict with either or with a
white-background product shot. Normalising an already normalised prompt
returns it unchanged. ``append_style`` is the non-destructive variant that
only adds what is missing.
"""

import re
from dataclasses import dataclass, field
from typing import List

from loguru import logger

SEPARATORS = ("，", "、", "·", "\r", "\n")

REFERENCE_PREFIX = "style reference: "

# 常见风格关键词（用于冲突检测）
STYLE_KEYWORDS = (
    "modern japanese anime style", "modern japanese anime", "japanese anime", "anime style", "anime",
    "日本动漫", "日式动漫", "日本动画",
    "studio ghibli", "ghibli", "makoto shinkai", "shinkai", "新海诚", "吉卜力", "宫崎骏",
    "american animation", "western animation", "pixar", "disney", "欧美动画", "美式动画",
    "european animation", "欧式动画",
    "chinese animation", "guoman", "国漫", "中国动画", "国风", "国漫风格",
    "cel-shaded", "cel shaded", "cel shading", "cel-shading", "赛璐璐",
    "light novel cover", "轻小说封面",
    "magical girl", "魔法少女",
    "chibi", "q版", "q 版",
)

REFERENCE_MARKERS = ("style reference", "参考作品", "reference work")

INSPIRATION_MARKERS = ("inspired by", "in the style of", "灵感来自")

WHITE_BG_PROTECTED = ("white background", "simple background", "studio lighting")

WHITE_BG_CONFLICTS = (
    "dark background", "black background", "gray background", "grey background", "gradient background",
    "vignette", "shadow", "floor", "ground", "scenery", "environment",
)


@dataclass
class NormalizationResult:
    prompt: str
    violations: List[str] = field(default_factory=list)


def split_segments(text: str) -> List[str]:
    """统一分隔符后按逗号切分，去掉空片段"""
    for sep in SEPARATORS:
        text = text.replace(sep, ",")
    return [seg.strip() for seg in text.split(",") if seg.strip()]


class StyleConsistencyChecker:
    """风格一致性校验与自动修正"""

    def _style_parts(self, style: str) -> List[str]:
        parts = []
        seen = set()
        for part in split_segments(style or ""):
            if part.lower() not in seen:
                seen.add(part.lower())
                parts.append(part)
        return parts

    @staticmethod
    def _reference_name(reference: str) -> str:
        # The canonical tag is a single segment, so separators inside the name become spaces
        name = reference or ""
        for sep in SEPARATORS + (",",):
            name = name.replace(sep, " ")
        return re.sub(r"\s+", " ", name).strip()

    @staticmethod
    def _is_style_conflict(lower: str, target_style: str) -> bool:
        if target_style in lower:
            return False
        return any(kw in lower and kw not in target_style for kw in STYLE_KEYWORDS)

    @staticmethod
    def _is_white_background_conflict(lower: str) -> bool:
        protected = [kw for kw in WHITE_BG_PROTECTED if kw in lower]
        if not protected:
            return False
        # "white background" itself must not count as "ground"
        remainder = lower
        for kw in protected:
            remainder = remainder.replace(kw, " ")
        return any(conflict in remainder for conflict in WHITE_BG_CONFLICTS)

    def normalize(self, prompt: str, style: str = "", reference: str = "") -> NormalizationResult:
        violations: List[str] = []

        raw = (prompt or "").strip()
        if not raw:
            return NormalizationResult("", violations)

        style_parts = self._style_parts(style)
        target_style = ", ".join(style_parts).lower()
        style_part_keys = {p.lower() for p in style_parts}

        ref_name = self._reference_name(reference)
        canonical_ref = f"{REFERENCE_PREFIX}{ref_name}" if ref_name else ""

        result: List[str] = []
        seen = set()

        for seg in split_segments(raw):
            lower = seg.lower()

            # 参考作品归一化：只允许项目设定的参考作品（风格设定本身不改写）
            is_reference = lower not in style_part_keys and any(m in lower for m in REFERENCE_MARKERS)
            if canonical_ref and is_reference:
                if ref_name.lower() not in lower:
                    violations.append(f"replaced non-project reference work '{seg}' with '{ref_name}'")
                seg = canonical_ref
                lower = seg.lower()

            is_canonical = lower in style_part_keys or (canonical_ref and lower == canonical_ref.lower())

            if not is_canonical:
                if target_style and self._is_style_conflict(lower, target_style):
                    violations.append(f"removed segment with conflicting style keyword: '{seg}'")
                    continue

                if self._is_white_background_conflict(lower):
                    violations.append(f"removed segment conflicting with white background: '{seg}'")
                    continue

            if lower in seen:
                continue
            seen.add(lower)
            result.append(seg)

        # 追加缺失的风格和参考作品
        lowered = [seg.lower() for seg in result]
        for part in style_parts:
            if not any(part.lower() in seg for seg in lowered):
                result.append(part)
                lowered.append(part.lower())
        if canonical_ref and canonical_ref.lower() not in lowered:
            result.append(canonical_ref)

        if violations:
            logger.info(f"Prompt normalized with {len(violations)} style violation(s)")
        return NormalizationResult(", ".join(result), violations)

    def append_style(self, prompt: str, style: str = "", reference: str = "") -> str:
        """
        只追加不删除的风格补全

        Existing segments are kept (only exact duplicates go). Segments that
        already name the project reference ("inspired by X", "参考作品: X") become
        the canonical ``style reference: X``; the target style and the reference
        are appended when missing.
        """
        raw = (prompt or "").strip()
        if not raw:
            return ""

        style_parts = self._style_parts(style)
        style_part_keys = {p.lower() for p in style_parts}
        ref_name = self._reference_name(reference)
        canonical_ref = f"{REFERENCE_PREFIX}{ref_name}" if ref_name else ""
        markers = REFERENCE_MARKERS + INSPIRATION_MARKERS

        result: List[str] = []
        seen = set()
        for seg in split_segments(raw):
            lower = seg.lower()
            names_reference = ref_name.lower() in lower and any(m in lower for m in markers)
            if canonical_ref and names_reference and lower not in style_part_keys:
                seg = canonical_ref
                lower = seg.lower()
            if lower in seen:
                continue
            seen.add(lower)
            result.append(seg)

        lowered = [seg.lower() for seg in result]
        for part in style_parts:
            if not any(part.lower() in seg for seg in lowered):
                result.append(part)
                lowered.append(part.lower())
        if canonical_ref and canonical_ref.lower() not in lowered:
            result.append(canonical_ref)
        return ", ".join(result)


style_checker = StyleConsistencyChecker()
