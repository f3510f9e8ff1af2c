# crm_assistant/models.py
# Tabelas do CRM que o assistente pode consultar (espelham policy.ALLOWED_TABLES).
# O assistente só lê; as descrições alimentam o contexto de schema do prompt.
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class CrmProspect(SQLModel, table=True):
    __tablename__ = "crm_prospects"

    id: str = Field(primary_key=True, description="UUID")
    organization_id: str = Field(index=True, description="UUID (OBLIGATOIRE dans WHERE)")
    first_name: Optional[str] = Field(default=None, description="prenom du prospect")
    last_name: Optional[str] = Field(default=None, description="nom du prospect")
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, description="telephone")
    patrimoine_estime: Optional[float] = Field(
        default=None,
        description="patrimoine reel du client en euros (actifs, biens, epargne)",
    )
    revenus_annuels: Optional[float] = Field(default=None, description="revenus annuels en euros")
    qualification: Optional[str] = Field(
        default=None, description="'chaud', 'tiede', 'froid', 'non_qualifie' (minuscules)"
    )
    score_ia: Optional[int] = Field(default=None, description="score 0-100 calcule par l'IA")
    analyse_ia: Optional[str] = Field(default=None, description="justification du score")
    derniere_qualification: Optional[datetime] = None
    stage_slug: Optional[str] = Field(
        default=None,
        description="nouveau, en_attente, rdv_pris, rdv_effectue, negociation, gagne, perdu",
    )
    assigned_to: Optional[str] = Field(
        default=None, description="FK users.id (conseiller), NULL si pas assigne"
    )
    situation_familiale: Optional[str] = Field(
        default=None, description="marie, celibataire, divorce, veuf"
    )
    nb_enfants: Optional[int] = None
    age: Optional[int] = None
    profession: Optional[str] = None
    company: Optional[str] = Field(default=None, description="entreprise")
    job_title: Optional[str] = Field(default=None, description="poste")
    city: Optional[str] = Field(default=None, description="ville")
    source: Optional[str] = Field(default=None, description="origine du lead")
    notes: Optional[str] = None
    last_activity_at: Optional[datetime] = Field(default=None, description="derniere interaction")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PipelineStage(SQLModel, table=True):
    __tablename__ = "pipeline_stages"

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    name: str = Field(description="nom affiche: Nouveau, En attente, RDV Pris...")
    slug: str = Field(description="identifiant, meme valeurs que crm_prospects.stage_slug")
    color: Optional[str] = None
    position: int = Field(default=0, description="ordre d'affichage")
    is_won: bool = False
    is_lost: bool = False
    default_probability: Optional[int] = None


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    email: str
    full_name: Optional[str] = Field(default=None, description="nom complet du conseiller")
    role: str = Field(default="conseiller", description="admin, conseiller")
    is_active: bool = True
    created_at: Optional[datetime] = None


class CrmEvent(SQLModel, table=True):
    __tablename__ = "crm_events"

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    prospect_id: Optional[str] = Field(default=None, foreign_key="crm_prospects.id")
    prospect_name: Optional[str] = None
    type: str = Field(description="task, call, meeting, reminder, email ('meeting' = RDV)")
    title: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    due_date: Optional[datetime] = Field(default=None, description="echeance")
    all_day: bool = False
    status: str = Field(default="pending", description="pending, completed, cancelled")
    completed_at: Optional[datetime] = None
    assigned_to: Optional[str] = Field(default=None, foreign_key="users.id")
    created_by: Optional[str] = Field(default=None, foreign_key="users.id")
    priority: Optional[str] = Field(default=None, description="low, medium, high, urgent")
    created_at: Optional[datetime] = None


class CrmActivity(SQLModel, table=True):
    __tablename__ = "crm_activities"

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    prospect_id: Optional[str] = Field(default=None, foreign_key="crm_prospects.id")
    user_id: Optional[str] = Field(default=None, foreign_key="users.id")
    type: str = Field(
        description="email, call, meeting, note, task_completed, stage_change, qualification"
    )
    direction: Optional[str] = Field(default=None, description="inbound, outbound")
    subject: Optional[str] = None
    content: Optional[str] = None
    email_status: Optional[str] = Field(
        default=None, description="sent, opened, clicked, replied, bounced"
    )
    duration_minutes: Optional[int] = None
    outcome: Optional[str] = Field(
        default=None, description="positive, neutral, negative, no_answer, voicemail"
    )
    created_at: Optional[datetime] = None


TABLE_MODELS = (CrmProspect, PipelineStage, User, CrmEvent, CrmActivity)
