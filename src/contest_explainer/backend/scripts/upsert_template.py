# src/contest_explainer/backend/scripts/upsert_template.py

"""
[职责] 将模板文件（Jinja2 语法）按名称写入 template 表（insert 或覆盖）。
[边界] 写入前仅做语法编译校验，不做变量完整性检查；不建表（见 init_db.py）。
[上游关系] 运维/开发在新增或修改 prompt 模板时调用。
[下游关系] generation pipeline 按 template_name 解析该模板。
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from contest_explainer.backend.db.engine import create_engine, create_sessionmaker
from contest_explainer.backend.pipelines.generation.prompt import render_prompt
from contest_explainer.backend.services.template_store import TemplateStore
from contest_explainer.backend.utils.errors import DomainError


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI 参数解析器。"""
    parser = argparse.ArgumentParser(description="Insert or replace a prompt template.")
    parser.add_argument("name", help="template name")  # docstring: 模板名（主键）
    parser.add_argument("path", help="template file (Jinja2 syntax)")  # docstring: 模板文件路径
    parser.add_argument("--db-url", dest="db_url", default=None)
    parser.add_argument("--encoding", default="utf-8")
    parser.add_argument("--json", action="store_true")
    return parser


async def _run_async(*, name: str, text: str, db_url: Optional[str]) -> Dict[str, Any]:
    start_ms = time.perf_counter() * 1000.0
    result: Dict[str, Any] = {"ok": True, "name": name, "chars": len(text), "duration_ms": 0.0, "error": None}
    engine = create_engine(url=db_url)
    try:
        render_prompt(text, None)  # docstring: 语法校验（缺失变量渲染为空）
        await TemplateStore(create_sessionmaker(engine)).upsert_template(name, text)
    except DomainError as exc:
        result["ok"] = False
        result["error"] = exc.to_dict()
    except Exception as exc:
        result["ok"] = False
        result["error"] = f"{exc.__class__.__name__}: {exc}"
    finally:
        await engine.dispose()
        result["duration_ms"] = round(time.perf_counter() * 1000.0 - start_ms, 2)
    return result


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI 入口：读取模板文件并 upsert。"""
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    text = Path(args.path).read_text(encoding=args.encoding)
    result = asyncio.run(_run_async(name=args.name, text=text, db_url=args.db_url))
    if args.json:
        print(json.dumps(result, ensure_ascii=True, default=str))
    else:
        status = "ok" if result.get("ok") else "failed"
        print(f"[upsert_template] status={status} name={result['name']} chars={result['chars']}")
        if result.get("error"):
            print(f"[upsert_template] error={result['error']}")
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    raise SystemExit(main())
