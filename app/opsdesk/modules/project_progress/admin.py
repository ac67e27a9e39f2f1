from __future__ import annotations

from flask import Blueprint, request

from app.opsdesk.db import db_session
from app.opsdesk.errors import ValidationError
from app.opsdesk.modules.project_progress.models import FeatureItem, FeatureModule, Platform, Project, ProjectPhase
from app.opsdesk.modules.project_progress.service import (
    create_catalogue_phase,
    create_item,
    create_module,
    create_phase,
    create_platform,
    create_project,
    delete_catalogue_phase,
    delete_item,
    delete_module,
    delete_phase,
    delete_platform,
    delete_project,
    get_item,
    get_project,
    import_project,
    import_template,
    is_progress_only,
    item_history,
    item_to_dict,
    items_for_module,
    items_for_project,
    list_modules,
    list_phases,
    list_platforms,
    module_to_dict,
    phase_catalogue,
    phase_to_dict,
    platform_to_dict,
    progress_record_to_dict,
    progress_summary,
    progress_tree,
    project_stats,
    project_to_dict,
    update_item,
    update_module,
    update_phase,
    update_platform,
    update_project,
    validate_item_payload,
    validate_module_payload,
    validate_phase_payload,
    validate_platform_payload,
    validate_project_payload,
)
from app.opsdesk.utils import fail, json_body, ok, parse_bool, parse_int

bp = Blueprint("project_progress", __name__)


def _required_id(raw, label: str) -> int:
    value = parse_int(raw)
    if not value:
        raise ValidationError(f"{label}ID不能为空")
    return value


# ---------- Overview ----------
@bp.get("")
def progress_overview():
    s = db_session()
    project_id = parse_int(request.args.get("projectId"), field="projectId")
    if project_id:
        project = get_project(s, project_id)
        return ok({"project": project_to_dict(project), "stats": project_stats(s, project)})
    return ok(progress_summary(s))


@bp.get("/tree")
def progress_tree_view():
    s = db_session()
    raw_platform = (request.args.get("platformId") or "").strip()
    platform_id = parse_int(raw_platform, field="platformId") if raw_platform and raw_platform != "all" else None
    return ok(progress_tree(s, phase_name=(request.args.get("phase") or "").strip() or None, platform_id=platform_id))


# ---------- Projects ----------
@bp.get("/projects")
def projects_list():
    s = db_session()
    project_id = parse_int(request.args.get("id"), field="id")
    if project_id:
        return ok(project_to_dict(get_project(s, project_id)))
    rows = s.query(Project).order_by(Project.created_at.desc(), Project.id.desc()).all()
    return ok([project_to_dict(p) for p in rows])


@bp.post("/projects")
def projects_create():
    s = db_session()
    payload = json_body()
    errors = validate_project_payload(payload)
    if errors:
        return fail(errors[0], 400)
    p = create_project(s, payload)
    s.commit()
    return ok(project_to_dict(p), message="项目创建成功", status=201)


@bp.put("/projects")
def projects_update():
    s = db_session()
    payload = json_body()
    project_id = _required_id(payload.get("id"), "项目")
    errors = validate_project_payload(payload, require_name=False)
    if errors:
        return fail(errors[0], 400)
    p = update_project(s, get_project(s, project_id), payload)
    s.commit()
    return ok(project_to_dict(p), message="项目更新成功")


@bp.delete("/projects")
def projects_delete():
    s = db_session()
    project_id = _required_id(request.args.get("id"), "项目")
    delete_project(s, project_id)
    s.commit()
    return ok(message="项目删除成功")


# ---------- Phases ----------
@bp.get("/phases")
def phases_list():
    s = db_session()
    project_id = parse_int(request.args.get("projectId"), field="projectId")
    if not project_id:
        return fail("项目ID不能为空", 400)
    return ok([phase_to_dict(ph) for ph in list_phases(s, project_id)])


@bp.post("/phases")
def phases_create():
    s = db_session()
    payload = json_body()
    errors = validate_phase_payload(payload)
    if errors:
        return fail(errors[0], 400)
    ph = create_phase(s, payload)
    s.commit()
    return ok(phase_to_dict(ph), message="阶段创建成功", status=201)


@bp.put("/phases")
def phases_update():
    s = db_session()
    payload = json_body()
    phase_id = _required_id(payload.get("id"), "阶段")
    errors = validate_phase_payload(payload, creating=False)
    if errors:
        return fail(errors[0], 400)
    ph = s.get(ProjectPhase, phase_id)
    if ph is None:
        return fail("阶段不存在", 404)
    update_phase(s, ph, payload)
    s.commit()
    return ok(phase_to_dict(ph), message="阶段更新成功")


@bp.delete("/phases")
def phases_delete():
    s = db_session()
    delete_phase(s, _required_id(request.args.get("id"), "阶段"))
    s.commit()
    return ok(message="阶段删除成功")


@bp.get("/phases/manage")
def phase_catalogue_list():
    return ok(phase_catalogue(db_session()))


@bp.post("/phases/manage")
def phase_catalogue_create():
    s = db_session()
    payload = json_body()
    name = (payload.get("name") or "").strip()
    if not name:
        return fail("期数名称不能为空", 400)
    ph = create_catalogue_phase(s, name, (payload.get("description") or "").strip() or None)
    s.commit()
    return ok(phase_to_dict(ph), message=f"期数 \"{name}\" 创建成功", status=201)


@bp.delete("/phases/manage")
def phase_catalogue_delete():
    s = db_session()
    name = (request.args.get("name") or "").strip()
    if not name:
        return fail("期数名称不能为空", 400)
    affected = delete_catalogue_phase(s, name)
    s.commit()
    return ok(
        {"name": name, "affectedProjects": affected},
        message=f"期数 \"{name}\" 已从 {len(affected)} 个项目中删除",
    )


# ---------- Modules ----------
@bp.get("/modules")
def modules_list():
    s = db_session()
    project_id = parse_int(request.args.get("projectId"), field="projectId")
    if not project_id:
        return fail("项目ID不能为空", 400)
    return ok([module_to_dict(m) for m in list_modules(s, project_id)])


@bp.post("/modules")
def modules_create():
    s = db_session()
    payload = json_body()
    errors = validate_module_payload(payload)
    if errors:
        return fail(errors[0], 400)
    m = create_module(s, payload)
    s.commit()
    return ok(module_to_dict(m), message="模块创建成功", status=201)


@bp.put("/modules")
def modules_update():
    s = db_session()
    payload = json_body()
    module_id = _required_id(payload.get("id"), "模块")
    errors = validate_module_payload(payload, creating=False)
    if errors:
        return fail(errors[0], 400)
    m = s.get(FeatureModule, module_id)
    if m is None:
        return fail("模块不存在", 404)
    update_module(s, m, payload)
    s.commit()
    return ok(module_to_dict(m), message="模块更新成功")


@bp.delete("/modules")
def modules_delete():
    s = db_session()
    delete_module(s, _required_id(request.args.get("id"), "模块"))
    s.commit()
    return ok(message="模块删除成功")


# ---------- Feature items ----------
@bp.get("/feature-items")
def items_list():
    s = db_session()
    item_id = parse_int(request.args.get("id"), field="id")
    if item_id:
        return ok(item_to_dict(get_item(s, item_id), with_module=True))
    project_id = parse_int(request.args.get("projectId"), field="projectId")
    if project_id:
        items = items_for_project(s, project_id, (request.args.get("phase") or "").strip() or None)
        return ok([item_to_dict(i, with_module=True) for i in items])
    module_id = parse_int(request.args.get("moduleId"), field="moduleId")
    if module_id:
        return ok([item_to_dict(i) for i in items_for_module(s, module_id)])
    return fail("需要提供 id、projectId 或 moduleId 参数", 400)


@bp.post("/feature-items")
def items_create():
    s = db_session()
    payload = json_body()
    errors = validate_item_payload(payload)
    if errors:
        return fail(errors[0], 400)
    item = create_item(s, payload)
    s.commit()
    return ok(item_to_dict(item), message="功能点创建成功", status=201)


@bp.put("/feature-items")
def items_update():
    s = db_session()
    payload = json_body()
    item_id = _required_id(payload.get("id"), "功能点")
    errors = validate_item_payload(payload, creating=False)
    if errors:
        return fail(errors[0], 400)
    item = s.get(FeatureItem, item_id)
    if item is None:
        return fail("功能点不存在", 404)
    progress_only = is_progress_only(payload)
    update_item(s, item, payload)
    s.commit()
    return ok(item_to_dict(item), message="进度更新成功" if progress_only else "功能点更新成功")


@bp.delete("/feature-items")
def items_delete():
    s = db_session()
    delete_item(s, _required_id(request.args.get("id"), "功能点"))
    s.commit()
    return ok(message="功能点删除成功")


@bp.get("/feature-items/<item_id>/history")
def items_history(item_id: str):
    s = db_session()
    value = parse_int(item_id)
    if not value or value <= 0:
        return fail("无效的功能点ID", 400)
    return ok([progress_record_to_dict(r) for r in item_history(s, value)])


# ---------- Platforms ----------
@bp.get("/platforms")
def platforms_list():
    s = db_session()
    include_stats = parse_bool(request.args.get("includeStats"))
    return ok(list_platforms(s, include_stats=include_stats))


@bp.post("/platforms")
def platforms_create():
    s = db_session()
    payload = json_body()
    errors = validate_platform_payload(payload)
    if errors:
        return fail(errors[0], 400)
    p = create_platform(s, payload)
    s.commit()
    return ok(platform_to_dict(p), message=f"平台 \"{p.name}\" 创建成功", status=201)


@bp.put("/platforms")
def platforms_update():
    s = db_session()
    payload = json_body()
    platform_id = _required_id(payload.get("id"), "平台")
    errors = validate_platform_payload(payload, require_name=False)
    if errors:
        return fail(errors[0], 400)
    p = s.get(Platform, platform_id)
    if p is None:
        return fail("平台不存在", 404)
    update_platform(s, p, payload)
    s.commit()
    return ok(platform_to_dict(p), message="平台更新成功")


@bp.delete("/platforms")
def platforms_delete():
    s = db_session()
    delete_platform(s, _required_id(request.args.get("id"), "平台"))
    s.commit()
    return ok(message="平台删除成功")


# ---------- Import ----------
@bp.post("/import")
def project_import():
    s = db_session()
    payload = json_body()
    project_data = payload.get("projectData")
    if not isinstance(project_data, dict):
        return fail("缺少项目数据", 400)
    result = import_project(s, project_data)
    s.commit()
    stats = result["stats"]
    return ok(
        result,
        message=(
            f"导入成功：{stats['phasesImported']} 个阶段，"
            f"{stats['modulesImported']} 个模块，{stats['featureItemsImported']} 个功能点"
        ),
    )


@bp.get("/import")
def project_import_template():
    return ok(import_template(), message="项目导入模板")
