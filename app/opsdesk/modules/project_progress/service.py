from __future__ import annotations

import re
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Iterable

from sqlalchemy import func

from app.opsdesk.audit import record_event
from app.opsdesk.constants import HEX_COLOR_RE
from app.opsdesk.errors import ConflictError, NotFoundError, ValidationError
from app.opsdesk.modules.project_progress.models import (
    DONE_STATUSES,
    ITEM_PRIORITIES,
    ITEM_STATUSES,
    PHASE_STATUSES,
    PLATFORM_STATUSES,
    PROJECT_STATUSES,
    FeatureItem,
    FeatureModule,
    Platform,
    ProgressRecord,
    Project,
    ProjectPhase,
)
from app.opsdesk.utils import clean_str, iso, parse_date

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


UNASSIGNED_PLATFORM = "未分配平台"
TEMPLATE_PROJECT_NAME = "阶段模板"
PROGRESS_ONLY_KEYS = {"id", "status", "progress_percentage", "notes"}
_CN_DIGITS = {"零": 0, "一": 1, "二": 2, "两": 2, "三": 3, "四": 4, "五": 5, "六": 6, "七": 7, "八": 8, "九": 9}


# ---------- Serialization ----------
def platform_to_dict(p: Platform) -> dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "color": p.color,
        "status": p.status,
        "created_at": iso(p.created_at),
        "updated_at": iso(p.updated_at),
    }


def project_to_dict(p: Project) -> dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "platform_id": p.platform_id,
        "platform_name": p.platform.name if p.platform else None,
        "status": p.status,
        "start_date": iso(p.start_date),
        "end_date": iso(p.end_date),
        "created_at": iso(p.created_at),
        "updated_at": iso(p.updated_at),
    }


def phase_to_dict(ph: ProjectPhase) -> dict[str, Any]:
    return {
        "id": ph.id,
        "project_id": ph.project_id,
        "name": ph.name,
        "description": ph.description,
        "phase_order": ph.phase_order,
        "status": ph.status,
        "start_date": iso(ph.start_date),
        "end_date": iso(ph.end_date),
        "created_at": iso(ph.created_at),
        "updated_at": iso(ph.updated_at),
    }


def module_to_dict(m: FeatureModule) -> dict[str, Any]:
    return {
        "id": m.id,
        "project_id": m.project_id,
        "phase_id": m.phase_id,
        "phase_name": m.phase.name if m.phase else None,
        "name": m.name,
        "description": m.description,
        "module_order": m.module_order,
        "created_at": iso(m.created_at),
        "updated_at": iso(m.updated_at),
    }


def item_to_dict(i: FeatureItem, *, with_module: bool = False) -> dict[str, Any]:
    d: dict[str, Any] = {
        "id": i.id,
        "module_id": i.module_id,
        "name": i.name,
        "description": i.description,
        "priority": i.priority,
        "status": i.status,
        "progress_percentage": i.progress_percentage,
        "estimated_hours": i.estimated_hours,
        "actual_hours": i.actual_hours,
        "assignee": i.assignee,
        "start_date": iso(i.start_date),
        "estimated_completion_date": iso(i.estimated_completion_date),
        "actual_completion_date": iso(i.actual_completion_date),
        "notes": i.notes,
        "created_at": iso(i.created_at),
        "updated_at": iso(i.updated_at),
    }
    if with_module:
        d["module"] = module_to_dict(i.module) if i.module else None
    return d


def progress_record_to_dict(r: ProgressRecord) -> dict[str, Any]:
    return {
        "id": r.id,
        "feature_item_id": r.feature_item_id,
        "old_status": r.old_status,
        "new_status": r.new_status,
        "old_progress": r.old_progress,
        "new_progress": r.new_progress,
        "notes": r.notes,
        "updated_by": r.updated_by,
        "created_at": iso(r.created_at),
    }


# ---------- Stats ----------
def _rate(done: int, total: int) -> int:
    return round(done / total * 100) if total else 0


def item_stats(items: Iterable[FeatureItem]) -> dict[str, Any]:
    items = list(items)
    total = len(items)
    completed = sum(1 for i in items if i.status in DONE_STATUSES)
    in_progress = sum(1 for i in items if i.status in ("in_progress", "testing"))
    pending = sum(1 for i in items if i.status == "pending")
    return {
        "totalItems": total,
        "completedItems": completed,
        "inProgressItems": in_progress,
        "pendingItems": pending,
        "averageProgress": round(sum(i.progress_percentage or 0 for i in items) / total, 1) if total else 0,
        "completionRate": _rate(completed, total),
    }


def _project_items(s: "Session", project_id: int) -> list[FeatureItem]:
    return (
        s.query(FeatureItem)
        .join(FeatureModule, FeatureItem.module_id == FeatureModule.id)
        .filter(FeatureModule.project_id == project_id)
        .all()
    )


def project_stats(s: "Session", project: Project) -> dict[str, Any]:
    stats = item_stats(_project_items(s, project.id))
    phases = []
    for ph in project.phases:
        items = [i for m in ph.modules for i in m.items]
        phases.append({"phaseId": ph.id, "name": ph.name, "status": ph.status, **item_stats(items)})
    stats["phases"] = phases
    return stats


def progress_summary(s: "Session") -> dict[str, Any]:
    projects = s.query(Project).order_by(Project.id.asc()).all()
    per_project = [{"project": project_to_dict(p), "stats": project_stats(s, p)} for p in projects]
    total_items = sum(x["stats"]["totalItems"] for x in per_project)
    completed = sum(x["stats"]["completedItems"] for x in per_project)
    return {
        "totalStats": {
            "totalProjects": len(projects),
            "activeProjects": sum(1 for p in projects if p.status == "active"),
            "totalItems": total_items,
            "completedItems": completed,
            "inProgressItems": sum(x["stats"]["inProgressItems"] for x in per_project),
            "pendingItems": sum(x["stats"]["pendingItems"] for x in per_project),
            "completionRate": _rate(completed, total_items),
        },
        "projects": per_project,
    }


def _rollup(children: list[dict[str, Any]]) -> dict[str, Any]:
    total = sum(c["stats"]["totalItems"] for c in children)
    done = sum(c["stats"]["completedItems"] for c in children)
    return {"totalItems": total, "completedItems": done, "completionRate": _rate(done, total)}


def _module_node(m: FeatureModule) -> dict[str, Any]:
    return {"module": module_to_dict(m), "featureItems": [item_to_dict(i) for i in m.items], "stats": item_stats(m.items)}


def progress_tree(s: "Session", *, phase_name: str | None = None, platform_id: int | None = None) -> dict[str, Any]:
    """
    Platform → project → phase → module → item, with stats rolled up per level.
    Projects without a platform land in a synthetic 未分配平台 bucket.
    """
    phase_filter = phase_name if phase_name and phase_name != "all" else None

    q = s.query(Project).order_by(Project.id.asc())
    if platform_id is not None:
        q = q.filter(Project.platform_id == platform_id)
    buckets: dict[int | None, list[Project]] = {}
    for p in q.all():
        buckets.setdefault(p.platform_id, []).append(p)

    platforms = {p.id: p for p in s.query(Platform).order_by(Platform.id.asc()).all()}
    tree = []
    module_count = 0
    for pid in [*platforms.keys(), None]:
        projects = buckets.get(pid)
        if not projects:
            continue
        project_nodes = []
        for project in projects:
            phase_nodes = []
            for ph in project.phases:
                if phase_filter and ph.name != phase_filter:
                    continue
                module_nodes = [_module_node(m) for m in ph.modules]
                module_count += len(module_nodes)
                phase_nodes.append({"phase": phase_to_dict(ph), "modules": module_nodes, "stats": _rollup(module_nodes)})
            node: dict[str, Any] = {"project": project_to_dict(project), "phases": phase_nodes}
            rollup_source = list(phase_nodes)
            if not phase_filter:
                loose = [_module_node(m) for m in project.modules if m.phase_id is None]
                module_count += len(loose)
                node["unassignedModules"] = loose
                rollup_source += loose
            elif not phase_nodes:
                continue
            node["stats"] = _rollup(rollup_source)
            project_nodes.append(node)
        if not project_nodes:
            continue
        platform = (
            platform_to_dict(platforms[pid])
            if pid is not None
            else {"id": None, "name": UNASSIGNED_PLATFORM, "color": "#6b7280", "status": "active"}
        )
        tree.append({"platform": platform, "projects": project_nodes, "stats": _rollup(project_nodes)})

    overall = _rollup(tree)
    overall["totalPlatforms"] = len(tree)
    overall["totalModules"] = module_count
    return {"platformTree": tree, "stats": overall}


# ---------- Platforms ----------
def list_platforms(s: "Session", *, include_stats: bool = False) -> list[dict[str, Any]]:
    out = []
    for p in s.query(Platform).order_by(Platform.id.asc()).all():
        d = platform_to_dict(p)
        if include_stats:
            items = (
                s.query(FeatureItem)
                .join(FeatureModule, FeatureItem.module_id == FeatureModule.id)
                .join(Project, FeatureModule.project_id == Project.id)
                .filter(Project.platform_id == p.id)
                .all()
            )
            d["projectCount"] = len(p.projects)
            d["stats"] = item_stats(items)
        out.append(d)
    return out


def validate_platform_payload(payload: dict, *, require_name: bool = True) -> list[str]:
    errors = []
    if require_name and not (payload.get("name") or "").strip():
        errors.append("平台名称不能为空")
    color = payload.get("color")
    if color and not HEX_COLOR_RE.match(str(color)):
        errors.append("颜色格式无效，应为 #RRGGBB")
    status = payload.get("status")
    if status and status not in PLATFORM_STATUSES:
        errors.append("平台状态无效")
    return errors


def _platform_name_taken(s: "Session", name: str, exclude_id: int | None = None) -> bool:
    q = s.query(Platform.id).filter(Platform.name == name)
    if exclude_id is not None:
        q = q.filter(Platform.id != exclude_id)
    return q.first() is not None


def create_platform(s: "Session", payload: dict) -> Platform:
    name = payload["name"].strip()
    if _platform_name_taken(s, name):
        raise ConflictError("平台名称已存在")
    now = datetime.utcnow()
    p = Platform(
        name=name,
        description=clean_str(payload.get("description")),
        color=clean_str(payload.get("color")) or "#3b82f6",
        status=payload.get("status") or "active",
        created_at=now,
        updated_at=now,
    )
    s.add(p)
    s.flush()
    record_event(s, action="platform.create", entity_type="Platform", entity_id=str(p.id), metadata={"name": name})
    return p


def update_platform(s: "Session", p: Platform, payload: dict) -> Platform:
    name = (payload.get("name") or "").strip()
    if name and name != p.name:
        if _platform_name_taken(s, name, exclude_id=p.id):
            raise ConflictError("平台名称已存在")
        p.name = name
    if "description" in payload:
        p.description = clean_str(payload.get("description"))
    if payload.get("color"):
        p.color = str(payload["color"]).strip()
    if payload.get("status"):
        p.status = payload["status"]
    p.updated_at = datetime.utcnow()
    record_event(s, action="platform.edit", entity_type="Platform", entity_id=str(p.id))
    return p


def delete_platform(s: "Session", platform_id: int) -> None:
    p = s.get(Platform, platform_id)
    if p is None:
        raise NotFoundError("平台不存在")
    count = s.query(func.count(Project.id)).filter(Project.platform_id == platform_id).scalar() or 0
    if count:
        raise ConflictError(f"该平台下还有 {count} 个项目，无法删除", projectCount=count)
    s.delete(p)
    record_event(s, action="platform.delete", entity_type="Platform", entity_id=str(platform_id), metadata={"name": p.name})


# ---------- Projects ----------
def get_project(s: "Session", project_id: int) -> Project:
    p = s.get(Project, project_id)
    if p is None:
        raise NotFoundError("项目不存在")
    return p


def validate_project_payload(payload: dict, *, require_name: bool = True) -> list[str]:
    errors = []
    if require_name and not (payload.get("name") or "").strip():
        errors.append("项目名称不能为空")
    status = payload.get("status")
    if status and status not in PROJECT_STATUSES:
        errors.append(f"项目状态无效，可选: {', '.join(PROJECT_STATUSES)}")
    return errors


def _resolve_platform(s: "Session", raw: Any) -> int | None:
    if raw in (None, ""):
        return None
    try:
        platform_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("平台ID无效")
    if s.get(Platform, platform_id) is None:
        raise NotFoundError("平台不存在")
    return platform_id


def create_project(s: "Session", payload: dict) -> Project:
    now = datetime.utcnow()
    p = Project(
        name=payload["name"].strip(),
        description=clean_str(payload.get("description")),
        platform_id=_resolve_platform(s, payload.get("platform_id")),
        status=payload.get("status") or "active",
        start_date=parse_date(payload.get("start_date")),
        end_date=parse_date(payload.get("end_date")),
        created_at=now,
        updated_at=now,
    )
    s.add(p)
    s.flush()
    record_event(s, action="project.create", entity_type="Project", entity_id=str(p.id), metadata={"name": p.name})
    return p


def update_project(s: "Session", p: Project, payload: dict) -> Project:
    if (payload.get("name") or "").strip():
        p.name = payload["name"].strip()
    if "description" in payload:
        p.description = clean_str(payload.get("description"))
    if "platform_id" in payload:
        p.platform_id = _resolve_platform(s, payload.get("platform_id"))
    if payload.get("status"):
        p.status = payload["status"]
    if "start_date" in payload:
        p.start_date = parse_date(payload.get("start_date"))
    if "end_date" in payload:
        p.end_date = parse_date(payload.get("end_date"))
    p.updated_at = datetime.utcnow()
    record_event(s, action="project.edit", entity_type="Project", entity_id=str(p.id))
    return p


def delete_project(s: "Session", project_id: int) -> None:
    """Phases, modules, items and their progress records go with the project."""
    p = get_project(s, project_id)
    s.delete(p)
    record_event(s, action="project.delete", entity_type="Project", entity_id=str(project_id), metadata={"name": p.name})


# ---------- Phases ----------
def list_phases(s: "Session", project_id: int) -> list[ProjectPhase]:
    return (
        s.query(ProjectPhase)
        .filter(ProjectPhase.project_id == project_id)
        .order_by(ProjectPhase.phase_order.asc(), ProjectPhase.id.asc())
        .all()
    )


def validate_phase_payload(payload: dict, *, creating: bool = True) -> list[str]:
    errors = []
    if creating:
        if not payload.get("project_id"):
            errors.append("项目ID不能为空")
        if not (payload.get("name") or "").strip():
            errors.append("阶段名称不能为空")
        if payload.get("phase_order") in (None, ""):
            errors.append("阶段顺序不能为空")
    if payload.get("phase_order") not in (None, ""):
        try:
            int(payload["phase_order"])
        except (TypeError, ValueError):
            errors.append("阶段顺序必须是整数")
    status = payload.get("status")
    if status and status not in PHASE_STATUSES:
        errors.append("阶段状态无效")
    return errors


def create_phase(s: "Session", payload: dict) -> ProjectPhase:
    project = get_project(s, int(payload["project_id"]))
    now = datetime.utcnow()
    ph = ProjectPhase(
        project_id=project.id,
        name=payload["name"].strip(),
        description=clean_str(payload.get("description")),
        phase_order=int(payload["phase_order"]),
        status=payload.get("status") or "pending",
        start_date=parse_date(payload.get("start_date")),
        end_date=parse_date(payload.get("end_date")),
        created_at=now,
        updated_at=now,
    )
    s.add(ph)
    s.flush()
    record_event(s, action="project.phase.create", entity_type="ProjectPhase", entity_id=str(ph.id), metadata={"project_id": project.id})
    return ph


def update_phase(s: "Session", ph: ProjectPhase, payload: dict) -> ProjectPhase:
    if (payload.get("name") or "").strip():
        ph.name = payload["name"].strip()
    if "description" in payload:
        ph.description = clean_str(payload.get("description"))
    if payload.get("phase_order") not in (None, ""):
        ph.phase_order = int(payload["phase_order"])
    if payload.get("status"):
        ph.status = payload["status"]
    if "start_date" in payload:
        ph.start_date = parse_date(payload.get("start_date"))
    if "end_date" in payload:
        ph.end_date = parse_date(payload.get("end_date"))
    ph.updated_at = datetime.utcnow()
    record_event(s, action="project.phase.edit", entity_type="ProjectPhase", entity_id=str(ph.id))
    return ph


def delete_phase(s: "Session", phase_id: int) -> None:
    ph = s.get(ProjectPhase, phase_id)
    if ph is None:
        raise NotFoundError("阶段不存在")
    s.delete(ph)
    record_event(s, action="project.phase.delete", entity_type="ProjectPhase", entity_id=str(phase_id), metadata={"name": ph.name})


def phase_sort_key(name: str) -> tuple[int, str]:
    """Order "第二期" before "第十期": Arabic digits first, then simple Chinese numerals."""
    digits = re.sub(r"\D", "", name)
    if digits:
        return int(digits), name
    m = re.search(r"[零一二两三四五六七八九十]+", name)
    if not m:
        return 999, name
    token = m.group(0)
    if "十" in token:
        tens, _, ones = token.partition("十")
        value = (_CN_DIGITS.get(tens, 1) if tens else 1) * 10 + (_CN_DIGITS.get(ones, 0) if ones else 0)
    else:
        value = 0
        for ch in token:
            value = value * 10 + _CN_DIGITS.get(ch, 0)
    return value, name


def phase_catalogue(s: "Session") -> list[dict[str, Any]]:
    rows = (
        s.query(ProjectPhase.name, func.count(func.distinct(ProjectPhase.project_id)))
        .group_by(ProjectPhase.name)
        .all()
    )
    return [
        {"name": name, "projectCount": count}
        for name, count in sorted(rows, key=lambda r: phase_sort_key(r[0]))
        if name
    ]


def create_catalogue_phase(s: "Session", name: str, description: str | None) -> ProjectPhase:
    template = s.query(Project).filter(Project.name == TEMPLATE_PROJECT_NAME).first()
    if template is None:
        template = create_project(s, {"name": TEMPLATE_PROJECT_NAME, "description": "期数模板项目", "status": "active"})
    elif any(ph.name == name for ph in template.phases):
        raise ConflictError(f"期数 \"{name}\" 已存在")
    order = (s.query(func.max(ProjectPhase.phase_order)).filter(ProjectPhase.project_id == template.id).scalar() or 0) + 1
    return create_phase(
        s,
        {
            "project_id": template.id,
            "name": name,
            "description": description or f"{name}开发阶段",
            "phase_order": order,
        },
    )


def delete_catalogue_phase(s: "Session", name: str) -> list[str]:
    phases = s.query(ProjectPhase).filter(ProjectPhase.name == name).all()
    if not phases:
        raise NotFoundError(f"未找到期数 \"{name}\"")
    affected = sorted({ph.project.name for ph in phases})
    for ph in phases:
        s.delete(ph)
    record_event(s, action="project.phase.delete_all", entity_type="ProjectPhase", metadata={"name": name, "projects": affected})
    return affected


# ---------- Modules ----------
def list_modules(s: "Session", project_id: int) -> list[FeatureModule]:
    return (
        s.query(FeatureModule)
        .filter(FeatureModule.project_id == project_id)
        .order_by(FeatureModule.module_order.asc(), FeatureModule.id.asc())
        .all()
    )


def validate_module_payload(payload: dict, *, creating: bool = True) -> list[str]:
    errors = []
    if creating:
        if not payload.get("project_id"):
            errors.append("项目ID不能为空")
        if not (payload.get("name") or "").strip():
            errors.append("模块名称不能为空")
    if payload.get("module_order") not in (None, ""):
        try:
            int(payload["module_order"])
        except (TypeError, ValueError):
            errors.append("模块顺序必须是整数")
    return errors


def _resolve_phase(s: "Session", project_id: int, raw: Any) -> int | None:
    if raw in (None, ""):
        return None
    try:
        phase_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("阶段ID无效")
    ph = s.get(ProjectPhase, phase_id)
    if ph is None:
        raise NotFoundError("阶段不存在")
    if ph.project_id != project_id:
        raise ValidationError("阶段不属于该项目")
    return phase_id


def create_module(s: "Session", payload: dict) -> FeatureModule:
    project = get_project(s, int(payload["project_id"]))
    now = datetime.utcnow()
    m = FeatureModule(
        project_id=project.id,
        phase_id=_resolve_phase(s, project.id, payload.get("phase_id")),
        name=payload["name"].strip(),
        description=clean_str(payload.get("description")),
        module_order=int(payload["module_order"]) if payload.get("module_order") not in (None, "") else None,
        created_at=now,
        updated_at=now,
    )
    s.add(m)
    s.flush()
    record_event(s, action="project.module.create", entity_type="FeatureModule", entity_id=str(m.id), metadata={"project_id": project.id})
    return m


def update_module(s: "Session", m: FeatureModule, payload: dict) -> FeatureModule:
    if (payload.get("name") or "").strip():
        m.name = payload["name"].strip()
    if "description" in payload:
        m.description = clean_str(payload.get("description"))
    if "phase_id" in payload:
        m.phase_id = _resolve_phase(s, m.project_id, payload.get("phase_id"))
    if payload.get("module_order") not in (None, ""):
        m.module_order = int(payload["module_order"])
    m.updated_at = datetime.utcnow()
    record_event(s, action="project.module.edit", entity_type="FeatureModule", entity_id=str(m.id))
    return m


def delete_module(s: "Session", module_id: int) -> None:
    m = s.get(FeatureModule, module_id)
    if m is None:
        raise NotFoundError("模块不存在")
    s.delete(m)
    record_event(s, action="project.module.delete", entity_type="FeatureModule", entity_id=str(module_id), metadata={"name": m.name})


# ---------- Feature items ----------
def get_item(s: "Session", item_id: int) -> FeatureItem:
    i = s.get(FeatureItem, item_id)
    if i is None:
        raise NotFoundError("功能点不存在")
    return i


def items_for_project(s: "Session", project_id: int, phase_name: str | None = None) -> list[FeatureItem]:
    q = (
        s.query(FeatureItem)
        .join(FeatureModule, FeatureItem.module_id == FeatureModule.id)
        .filter(FeatureModule.project_id == project_id)
    )
    if phase_name and phase_name != "all":
        q = q.join(ProjectPhase, FeatureModule.phase_id == ProjectPhase.id).filter(ProjectPhase.name == phase_name)
    return q.order_by(FeatureModule.module_order.asc(), FeatureItem.id.asc()).all()


def items_for_module(s: "Session", module_id: int) -> list[FeatureItem]:
    return s.query(FeatureItem).filter(FeatureItem.module_id == module_id).order_by(FeatureItem.id.asc()).all()


def clamp_progress(raw: Any) -> int:
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        value = 0
    return max(0, min(100, value))


def _hours(raw: Any) -> float | None:
    if raw in (None, ""):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError("工时必须是数字")


def validate_item_payload(payload: dict, *, creating: bool = True) -> list[str]:
    errors = []
    if creating:
        if not payload.get("module_id"):
            errors.append("模块ID不能为空")
        if not (payload.get("name") or "").strip():
            errors.append("功能点名称不能为空")
    status = payload.get("status")
    if status and status not in ITEM_STATUSES:
        errors.append(f"功能点状态无效，可选: {', '.join(ITEM_STATUSES)}")
    priority = payload.get("priority")
    if priority and priority not in ITEM_PRIORITIES:
        errors.append(f"优先级无效，可选: {', '.join(ITEM_PRIORITIES)}")
    return errors


def _log_progress(
    s: "Session",
    item: FeatureItem,
    *,
    old_status: str | None,
    old_progress: int | None,
    notes: str | None,
    updated_by: str,
) -> ProgressRecord:
    r = ProgressRecord(
        feature_item_id=item.id,
        old_status=old_status,
        new_status=item.status,
        old_progress=old_progress,
        new_progress=item.progress_percentage,
        notes=notes,
        updated_by=updated_by,
        created_at=datetime.utcnow(),
    )
    s.add(r)
    return r


def _apply_completion(item: FeatureItem, old_status: str | None) -> None:
    if item.status in DONE_STATUSES and old_status not in DONE_STATUSES:
        item.progress_percentage = 100
        if item.actual_completion_date is None:
            item.actual_completion_date = date.today()


def create_item(s: "Session", payload: dict, *, updated_by: str = "system") -> FeatureItem:
    module = s.get(FeatureModule, int(payload["module_id"]))
    if module is None:
        raise NotFoundError("模块不存在")
    now = datetime.utcnow()
    item = FeatureItem(
        module_id=module.id,
        name=payload["name"].strip(),
        description=clean_str(payload.get("description")),
        priority=payload.get("priority") or "medium",
        status=payload.get("status") or "pending",
        progress_percentage=clamp_progress(payload.get("progress_percentage") or 0),
        estimated_hours=_hours(payload.get("estimated_hours")),
        actual_hours=_hours(payload.get("actual_hours")),
        assignee=clean_str(payload.get("assignee")),
        start_date=parse_date(payload.get("start_date")),
        estimated_completion_date=parse_date(payload.get("estimated_completion_date")),
        actual_completion_date=parse_date(payload.get("actual_completion_date")),
        notes=clean_str(payload.get("notes")),
        created_at=now,
        updated_at=now,
    )
    _apply_completion(item, None)
    s.add(item)
    s.flush()
    _log_progress(s, item, old_status=None, old_progress=None, notes="功能点创建", updated_by=updated_by)
    record_event(s, action="project.item.create", entity_type="FeatureItem", entity_id=str(item.id), metadata={"module_id": module.id})
    return item


def is_progress_only(payload: dict) -> bool:
    keys = set(payload)
    return keys <= PROGRESS_ONLY_KEYS and bool(keys & {"status", "progress_percentage"})


def update_item(s: "Session", item: FeatureItem, payload: dict, *, updated_by: str = "user") -> FeatureItem:
    """
    Full edit, or a progress-only update when the payload carries only
    status/progress/notes. Either way a status or progress change is logged.
    """
    old_status, old_progress = item.status, item.progress_percentage
    progress_only = is_progress_only(payload)

    if payload.get("status"):
        item.status = payload["status"]
    if payload.get("progress_percentage") is not None:
        item.progress_percentage = clamp_progress(payload["progress_percentage"])

    if progress_only:
        note = clean_str(payload.get("notes")) or "进度更新"
    else:
        name = (payload.get("name") or "").strip()
        if "name" in payload and not name:
            raise ValidationError("功能点名称不能为空")
        if name:
            item.name = name
        if "description" in payload:
            item.description = clean_str(payload.get("description"))
        if payload.get("priority"):
            item.priority = payload["priority"]
        for key in ("estimated_hours", "actual_hours"):
            if key in payload:
                setattr(item, key, _hours(payload.get(key)))
        if "assignee" in payload:
            item.assignee = clean_str(payload.get("assignee"))
        for key in ("start_date", "estimated_completion_date", "actual_completion_date"):
            if key in payload:
                setattr(item, key, parse_date(payload.get(key)))
        if "notes" in payload:
            item.notes = clean_str(payload.get("notes"))
        note = "功能点编辑更新"

    _apply_completion(item, old_status)
    item.updated_at = datetime.utcnow()
    if item.status != old_status or item.progress_percentage != old_progress:
        _log_progress(s, item, old_status=old_status, old_progress=old_progress, notes=note, updated_by=updated_by)
    record_event(
        s,
        action="project.item.progress" if progress_only else "project.item.edit",
        entity_type="FeatureItem",
        entity_id=str(item.id),
        metadata={"status": [old_status, item.status], "progress": [old_progress, item.progress_percentage]},
    )
    return item


def delete_item(s: "Session", item_id: int) -> None:
    item = get_item(s, item_id)
    s.delete(item)
    record_event(s, action="project.item.delete", entity_type="FeatureItem", entity_id=str(item_id), metadata={"name": item.name})


def item_history(s: "Session", item_id: int) -> list[ProgressRecord]:
    get_item(s, item_id)
    return (
        s.query(ProgressRecord)
        .filter(ProgressRecord.feature_item_id == item_id)
        .order_by(ProgressRecord.created_at.desc(), ProgressRecord.id.desc())
        .all()
    )


# ---------- JSON import ----------
def import_project(s: "Session", project_data: dict) -> dict[str, Any]:
    """
    Create a project tree from an export-style document in one transaction.
    originalId references on modules and items resolve to the newly created rows.
    """
    project = project_data.get("project")
    if not isinstance(project, dict) or not (project.get("name") or "").strip():
        raise ValidationError("无效的项目数据格式")
    phases = project_data.get("phases") or []
    modules = project_data.get("modules") or []
    items = project_data.get("featureItems") or []
    if not all(isinstance(x, list) for x in (phases, modules, items)):
        raise ValidationError("phases、modules、featureItems 必须是数组")

    errors = validate_project_payload(project)
    if errors:
        raise ValidationError(errors[0])
    new_project = create_project(s, project)

    phase_ids: dict[str, int] = {}
    for idx, ph in enumerate(phases, start=1):
        payload = {**ph, "project_id": new_project.id, "phase_order": ph.get("phase_order") or idx}
        errors = validate_phase_payload(payload)
        if errors:
            raise ValidationError(f"阶段 \"{ph.get('name') or idx}\": {errors[0]}")
        created = create_phase(s, payload)
        phase_ids[str(ph.get("originalId") or ph.get("name"))] = created.id

    module_ids: dict[str, int] = {}
    for idx, m in enumerate(modules, start=1):
        ref = m.get("phaseOriginalId") or m.get("phaseId")
        if ref not in (None, "") and str(ref) not in phase_ids:
            raise ValidationError(f"模块 \"{m.get('name') or idx}\" 引用的阶段不存在: {ref}")
        payload = {
            **m,
            "project_id": new_project.id,
            "phase_id": phase_ids.get(str(ref)) if ref not in (None, "") else None,
        }
        errors = validate_module_payload(payload)
        if errors:
            raise ValidationError(f"模块 \"{m.get('name') or idx}\": {errors[0]}")
        created_module = create_module(s, payload)
        module_ids[str(m.get("originalId") or m.get("name"))] = created_module.id

    item_count = 0
    for idx, it in enumerate(items, start=1):
        ref = it.get("moduleOriginalId") or it.get("moduleId")
        if str(ref) not in module_ids:
            raise ValidationError(f"功能点 \"{it.get('name') or idx}\" 的模块不存在: {ref}")
        payload = {**it, "module_id": module_ids[str(ref)]}
        errors = validate_item_payload(payload)
        if errors:
            raise ValidationError(f"功能点 \"{it.get('name') or idx}\": {errors[0]}")
        create_item(s, payload, updated_by="import")
        item_count += 1

    record_event(
        s,
        action="project.import",
        entity_type="Project",
        entity_id=str(new_project.id),
        metadata={"phases": len(phase_ids), "modules": len(module_ids), "items": item_count},
    )
    return {
        "projectId": new_project.id,
        "stats": {
            "projectsImported": 1,
            "phasesImported": len(phase_ids),
            "modulesImported": len(module_ids),
            "featureItemsImported": item_count,
        },
    }


def import_template() -> dict[str, Any]:
    return {
        "project": {
            "name": "示例项目",
            "description": "这是一个示例项目的描述",
            "status": "active",
            "start_date": "2025-01-01",
            "end_date": "2025-12-31",
        },
        "phases": [
            {"originalId": "phase1", "name": "第一期", "phase_order": 1, "status": "in_progress"},
            {"originalId": "phase2", "name": "第二期", "phase_order": 2, "status": "pending"},
        ],
        "modules": [
            {"originalId": "module1", "name": "用户管理", "phaseOriginalId": "phase1", "module_order": 1},
            {"originalId": "module2", "name": "数据分析", "phaseOriginalId": "phase2", "module_order": 2},
        ],
        "featureItems": [
            {
                "name": "用户注册功能",
                "moduleOriginalId": "module1",
                "priority": "high",
                "status": "completed",
                "progress_percentage": 100,
                "estimated_hours": 8,
                "assignee": "张三",
            },
            {
                "name": "数据可视化",
                "moduleOriginalId": "module2",
                "priority": "medium",
                "status": "pending",
                "progress_percentage": 0,
                "estimated_hours": 12,
                "assignee": "王五",
            },
        ],
    }
