"""
Excel export of the active match plan
"""

import io
from typing import Dict

import pandas as pd
from sqlalchemy.orm import Session

from dinner.core.errors import InvalidStateError
from dinner.models import Couple, Event
from dinner.services.envelope_service import envelope_state
from dinner.services.repositories import CoupleRepo, PlanRepo

class ExportService:
    """Service for exporting match plans to Excel"""

    SHEET_PAIRINGS = 'Pairings'
    SHEET_ENVELOPES = 'Envelopes'
    SHEET_UNPLACED = 'Unplaced'

    @staticmethod
    def _name(couples: Dict[int, Couple], couple_id) -> str:
        couple = couples.get(couple_id)
        return couple.display_name if couple else ''

    @staticmethod
    def plan_frames(db: Session, event: Event) -> Dict[str, pd.DataFrame]:
        """Pairings, envelopes and unplaced guests of the active plan as DataFrames"""
        plan = PlanRepo.get_active(db, event)
        if plan is None:
            raise InvalidStateError("Event has no active match plan", {"event_id": event.id})

        couples = {c.id: c for c in CoupleRepo.list_for_event(db, event.id)}

        def name(couple_id):
            return ExportService._name(couples, couple_id)

        pairings = pd.DataFrame(
            [
                {
                    'Course': p.course,
                    'Host ID': p.host_couple_id,
                    'Host': name(p.host_couple_id),
                    'Address': couples[p.host_couple_id].address if p.host_couple_id in couples else '',
                    'Guest ID': p.guest_couple_id,
                    'Guest': name(p.guest_couple_id),
                }
                for p in PlanRepo.pairings(db, plan.id)
            ],
            columns=['Course', 'Host ID', 'Host', 'Address', 'Guest ID', 'Guest'],
        )

        envelopes = pd.DataFrame(
            [
                {
                    'Course': e.course,
                    'Couple ID': e.couple_id,
                    'Couple': name(e.couple_id),
                    'Host ID': e.host_couple_id,
                    'Destination': e.destination_address,
                    'Teasing': e.teasing_at,
                    'Clue 1': e.clue_1_at,
                    'Clue 2': e.clue_2_at,
                    'Street': e.street_at,
                    'Number': e.number_at,
                    'Opened': e.opened_at,
                    'Cycling Minutes': e.cycling_minutes,
                    'State': envelope_state(e).value,
                    'Status': e.lifecycle.value,
                }
                for e in PlanRepo.envelopes(db, plan.id)
            ],
            columns=['Course', 'Couple ID', 'Couple', 'Host ID', 'Destination', 'Teasing', 'Clue 1', 'Clue 2',
                     'Street', 'Number', 'Opened', 'Cycling Minutes', 'State', 'Status'],
        )

        stats = plan.stats or {}
        unplaced = pd.DataFrame(
            [
                {'Course': u['course'], 'Couple ID': u['couple_id'], 'Couple': name(u['couple_id']), 'Reason': u['reason']}
                for u in stats.get('unplaced', [])
            ],
            columns=['Course', 'Couple ID', 'Couple', 'Reason'],
        )
        summary = pd.DataFrame(
            [
                {'Key': 'Version', 'Value': plan.version},
                {'Key': 'Frozen Courses', 'Value': ', '.join(plan.frozen_courses or [])},
                {'Key': 'Repeat Violations', 'Value': stats.get('repeat_violations', 0)},
                {'Key': 'Unplaced', 'Value': stats.get('unplaced_count', 0)},
            ]
        )
        return {
            ExportService.SHEET_PAIRINGS: pairings,
            ExportService.SHEET_ENVELOPES: envelopes,
            ExportService.SHEET_UNPLACED: unplaced,
            'Summary': summary,
        }

    @staticmethod
    def export_plan(db: Session, event: Event) -> bytes:
        """Export the active plan to an Excel workbook"""
        frames = ExportService.plan_frames(db, event)

        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
            for sheet_name, df in frames.items():
                df.to_excel(writer, index=False, sheet_name=sheet_name)

        return buffer.getvalue()

    @staticmethod
    def read_export(content: bytes) -> Dict[str, pd.DataFrame]:
        return pd.read_excel(io.BytesIO(content), sheet_name=None)
