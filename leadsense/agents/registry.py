import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from sqlmodel import select

from leadsense.config import EngineSettings
from leadsense.db import FollowUpTemplate, TemplateSeed, get_session

logger = logging.getLogger("agent.registry")


@dataclass
class TemplateSpec:
    catalog: str
    name: str
    sequence_number: int
    email_subject: str
    email_body: str
    sms_message: str
    is_active: bool
    path: Path


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


class TemplateRegistry:
    """Default follow-up templates declared in YAML catalogs.

    ``sync`` writes each catalog entry to the store once. Entries already
    seeded are never rewritten, so operator edits and deletions stick.
    """

    def __init__(self, template_dir: Optional[Path] = None):
        self.template_dir = template_dir or EngineSettings.from_env().template_dir
        self.templates: Dict[tuple, TemplateSpec] = {}

    def load(self) -> None:
        self.templates.clear()
        if not self.template_dir.exists():
            logger.warning("Template directory %s does not exist", self.template_dir)
            return
        for file in sorted(self.template_dir.glob("*.yaml")):
            data = _load_yaml(file)
            catalog = data.get("catalog", file.stem)
            for entry in data.get("templates", []):
                try:
                    spec = TemplateSpec(
                        catalog=catalog,
                        name=entry["name"],
                        sequence_number=int(entry["sequence_number"]),
                        email_subject=entry["email_subject"],
                        email_body=entry["email_body"],
                        sms_message=entry.get("sms_message", ""),
                        is_active=bool(entry.get("is_active", True)),
                        path=file,
                    )
                except (KeyError, TypeError, ValueError) as exc:
                    logger.error("Invalid template entry in %s: %s", file, exc)
                    continue
                self.templates[(catalog, spec.sequence_number)] = spec
            logger.info("Loaded template catalog %s from %s", catalog, file)

    def list(self) -> List[TemplateSpec]:
        return sorted(self.templates.values(), key=lambda spec: (spec.catalog, spec.sequence_number))

    async def sync(self) -> int:
        if not self.templates:
            self.load()
        created = 0
        async with get_session() as session:
            seeded = {
                (row.catalog_name, row.sequence_number)
                for row in (await session.exec(select(TemplateSeed))).all()
            }
            for spec in self.list():
                if (spec.catalog, spec.sequence_number) in seeded:
                    continue
                session.add(
                    FollowUpTemplate(
                        name=spec.name,
                        sequence_number=spec.sequence_number,
                        email_subject=spec.email_subject,
                        email_body=spec.email_body,
                        sms_message=spec.sms_message,
                        is_active=spec.is_active,
                    )
                )
                session.add(TemplateSeed(catalog_name=spec.catalog, sequence_number=spec.sequence_number))
                created += 1
            await session.commit()
        if created:
            logger.info("Seeded %d follow-up templates", created)
        return created


registry = TemplateRegistry()
