# crm_assistant/utils.py
from __future__ import annotations

from typing import List

from .models import TABLE_MODELS
from .policy import allowed_tables


def schema_markdown() -> str:
    """
    Gera um resumo em Markdown do schema a partir dos modelos SQLModel do CRM.
    Lista tabelas, colunas (com tipo e descrição) e relacionamentos (FKs).
    Só entram tabelas da allowlist.
    """
    md_lines: List[str] = []
    allowed = allowed_tables()

    for model in sorted(TABLE_MODELS, key=lambda m: m.__tablename__):
        table = model.__table__
        if table.name not in allowed:
            continue
        md_lines.append(f"### {table.name}")

        for col in table.columns:
            flags = []
            if col.primary_key:
                flags.append("PK")
            if not col.nullable:
                flags.append("NOT NULL")
            flag_txt = f" [{', '.join(flags)}]" if flags else ""
            field = model.model_fields.get(col.name)
            desc = f" - {field.description}" if field is not None and field.description else ""
            md_lines.append(f"- {col.name}: {col.type}{flag_txt}{desc}")

        fks = [
            f"{fk.parent.name} -> {fk.column.table.name}({fk.column.name})"
            for fk in sorted(table.foreign_keys, key=lambda fk: fk.parent.name)
        ]
        if fks:
            md_lines.append(f"Relations: {', '.join(fks)}")

        md_lines.append("")  # linha em branco entre tabelas

    return "\n".join(md_lines).strip()
