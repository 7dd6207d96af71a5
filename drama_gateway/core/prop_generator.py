"""
道具生成模块
Prop extraction from an episode script and prop image generation, both run as
background tasks.
"""

import json
from typing import Dict, List, Optional

from loguru import logger

from drama_gateway.core.ai_dispatcher import AIDispatcher
from drama_gateway.core.style_consistency import StyleConsistencyChecker, style_checker
from drama_gateway.server.generation_service import GenerationJobService
from drama_gateway.server.services import TaskSnapshot
from drama_gateway.server.task_runner import TaskContext, TaskOrchestrator
from drama_gateway.utils.config_loader import config_loader

PROP_FIELDS = ("name", "type", "description", "image_prompt")


class PropGenerator:
    """道具生成器"""

    def __init__(self, dispatcher: AIDispatcher, orchestrator: TaskOrchestrator,
                 jobs: GenerationJobService, checker: StyleConsistencyChecker = None):
        self.dispatcher = dispatcher
        self.orchestrator = orchestrator
        self.jobs = jobs
        self.checker = checker or style_checker

    def extract_props(self, episode_id, script: str) -> TaskSnapshot:
        """从剧本提取道具（异步），返回任务"""
        if not script or not script.strip():
            raise ValueError("script content is empty")

        task, _ = self.orchestrator.run(
            "prop_extraction", episode_id,
            lambda ctx: self._extract(ctx, script),
        )
        return task

    def _extract(self, ctx: TaskContext, script: str) -> List[Dict]:
        ctx.update_progress(0, "analysing script")

        prompts = config_loader.get_prompt("prop_extraction") or {}
        system_prompt = prompts.get("system", "")
        user_template = prompts.get("user_template", "{script}")
        prompt = user_template.format(script=script)

        logger.info(f"开始提取道具... (task: {ctx.task_id})")
        content = self.dispatcher.generate_text(prompt, system_prompt, max_tokens=2000)
        props = self.parse_props(content)

        ctx.update_progress(50, f"parsed {len(props)} props")
        return props

    @classmethod
    def parse_props(cls, content: str) -> List[Dict]:
        try:
            data = json.loads(cls._extract_json(content))
        except ValueError as e:
            raise ValueError(f"failed to parse AI result: {e}") from e

        if isinstance(data, dict):
            data = data.get("props", [])
        if not isinstance(data, list):
            raise ValueError("failed to parse AI result: expected a JSON array of props")

        props = []
        for item in data:
            if not isinstance(item, dict) or not str(item.get("name") or "").strip():
                continue
            prop = {key: str(item.get(key) or "").strip() for key in PROP_FIELDS}
            props.append(prop)
        return props

    @staticmethod
    def _extract_json(content: str) -> str:
        start = content.find("```json")
        if start != -1:
            start += 7
            end = content.find("```", start)
            if end != -1:
                return content[start:end].strip()
        start = content.find("```")
        if start != -1:
            start += 3
            end = content.find("```", start)
            if end != -1:
                return content[start:end].strip()
        return content.strip()

    @staticmethod
    def compose_image_style(style_prompt: str = "") -> str:
        parts = [
            config_loader.get("style.default_style", ""),
            config_loader.get("style.default_prop_style", ""),
            style_prompt,
        ]
        return ", ".join(p.strip() for p in parts if p and p.strip())

    @staticmethod
    def target_style(style_prompt: str = "", style: str = "") -> str:
        if style_prompt and style_prompt.strip():
            return style_prompt.strip()
        if style and style.strip() and style.strip() != "realistic":
            return style.strip()
        return ""

    def generate_prop_image(self, prop_id, prompt: str, drama_id=None, style_prompt: str = "",
                            style: str = "", reference_work: str = "") -> TaskSnapshot:
        """生成道具图片（异步），返回任务"""
        if not prompt or not prompt.strip():
            raise ValueError("prop has no image prompt")

        return self.orchestrator.run(
            "prop_image_generation", prop_id,
            lambda ctx: self._generate_image(ctx, prop_id, prompt, drama_id, style_prompt, style, reference_work),
        )[0]

    def _generate_image(self, ctx: TaskContext, prop_id, prompt: str, drama_id: Optional[str],
                        style_prompt: str, style: str, reference_work: str) -> Dict:
        ctx.update_progress(0, "generating image")

        # 风格设定先拼进提示词，再整体校验
        image_style = self.compose_image_style(style_prompt)
        composed = f"{prompt}, {image_style}" if image_style else prompt
        normalized = self.checker.normalize(composed, self.target_style(style_prompt, style), reference_work)
        if normalized.violations:
            logger.info(f"Prop prompt normalized by style consistency: prop_id={prop_id} "
                        f"violations={normalized.violations}")
            ctx.log("INFO", "Prop prompt normalized", {"violations": normalized.violations})

        job = self.jobs.submit_image({
            "drama_id": str(drama_id) if drama_id is not None else None,
            "prop_id": str(prop_id),
            "image_type": "prop",
            "prompt": normalized.prompt,
            "size": config_loader.get("style.default_image_size", "1024x1024"),
            "style": image_style,
            "provider": config_loader.get("ai.default_image_provider", ""),
        })

        done = ctx.wait_for_job(job["id"], self.jobs.get_job)
        return {"image_url": done["result_url"]}
