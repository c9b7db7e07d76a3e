from __future__ import annotations

import os
import time
from typing import Iterable

from flask import current_app
from werkzeug.utils import secure_filename

from ..app import db
from ..constants import SURFACE_IMAGE
from ..errors import StorageError, TemplateSourceError
from ..models import Template
from ..shared.object_storage import storage_from_config
from ..shared.placement import parse_placement
from ..shared.storage import template_dir, write_atomic
from ..shared.surfaces import ImageSurface, classify_surface, content_type_for
from .participant_import import normalize_category

MAX_TEMPLATE_BYTES = 10 * 1024 * 1024


def add_template(
    filename: str,
    data: bytes,
    name: str,
    placement_config: dict,
    categories: Iterable[str] | None = None,
    description: str | None = None,
) -> Template:
    """Store a template surface and record it with its placement.

    The surface kind is decided here, once, from the file's bytes. The
    placement is parsed up front so a template that cannot be rendered is
    never saved. A storage upload failure keeps the local copy and leaves
    ``storage_key`` empty.
    """
    cleaned = secure_filename(filename or "")
    if not cleaned:
        raise TemplateSourceError("Template filename is required")
    if not data:
        raise TemplateSourceError(f"Template {cleaned} is empty")
    if len(data) > MAX_TEMPLATE_BYTES:
        raise TemplateSourceError(f"Template {cleaned} is too large")

    surface = classify_surface(cleaned, data)
    parse_placement(placement_config)
    category_list = []
    for category in categories or []:
        normalized = normalize_category(category)
        if normalized not in category_list:
            category_list.append(normalized)
    if not category_list:
        category_list = [normalize_category(None)]

    stored_name = f"{int(time.time() * 1000)}_{cleaned}"
    dest = os.path.join(template_dir(current_app.config.get("SITE_ROOT", "/srv")), stored_name)
    write_atomic(dest, data)

    storage_key = None
    storage = storage_from_config(current_app.config)
    if storage is not None:
        try:
            stored = storage.upload_template(
                data, stored_name, category_list[0], content_type_for(surface)
            )
            storage_key = stored.key
        except StorageError as exc:
            current_app.logger.warning(
                f"[CERT-TEMPLATE] upload failed file={stored_name}: {exc}"
            )

    template = Template(
        name=name,
        description=description,
        categories=category_list,
        file_path=dest,
        storage_key=storage_key,
        surface_kind=surface.kind,
        image_format=surface.format if isinstance(surface, ImageSurface) else None,
        placement_config=placement_config,
        is_active=True,
    )
    db.session.add(template)
    db.session.commit()
    current_app.logger.info(
        f"[CERT-TEMPLATE] added id={template.id} kind={template.surface_kind} "
        f"file={stored_name} categories={','.join(category_list)}"
    )
    return template


def set_template_active(template_id: int, active: bool) -> Template:
    template = db.session.get(Template, template_id)
    if template is None:
        raise TemplateSourceError(f"Template {template_id} not found")
    template.is_active = active
    db.session.commit()
    return template


def describe_template(template: Template) -> dict:
    return {
        "id": template.id,
        "name": template.name,
        "categories": list(template.categories or []),
        "surface": template.surface_kind,
        "format": template.image_format if template.surface_kind == SURFACE_IMAGE else "pdf",
        "active": template.is_active,
        "file_path": template.file_path,
        "storage_key": template.storage_key,
    }
