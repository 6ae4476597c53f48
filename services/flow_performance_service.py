"""
Document flow analytics: session funnels, drop-off points and alerts
"""
import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

from services.supabase_client import get_supabase
from utils.logger import get_logger

logger = get_logger(__name__)

CACHE_TTL = 5 * 60  # seconds
EVENT_TYPES = ('step_start', 'step_complete', 'flow_complete', 'flow_abandon')

CRITICAL_COMPLETION_RATE = 50
WARNING_COMPLETION_RATE = 30


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0


def _parse_time(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class FlowPerformanceService:
    """Analyses flow_performance_events for document request flows"""

    def __init__(self, supabase=None):
        self._supabase_client = supabase
        self._metrics_cache: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    @property
    def supabase(self):
        """Injected client, else the shared one"""
        return self._supabase_client or get_supabase()

    def record_event(self, session_id: str, flow_id: str, template_id: str, step_id: str,
                     event_type: str, timestamp: Optional[datetime] = None,
                     time_spent: Optional[float] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        timestamp = timestamp or datetime.now(timezone.utc)
        self.supabase.table('flow_performance_events').insert({
            'session_id': session_id,
            'flow_id': flow_id,
            'template_id': template_id,
            'step_id': step_id,
            'event_type': event_type,
            'timestamp': timestamp.isoformat(),
            'time_spent': time_spent,
            'metadata': metadata,
        }).execute()

        if event_type == 'flow_complete':
            self.supabase.table('document_request_sessions').update({
                'status': 'completed',
                'completed_at': timestamp.isoformat(),
            }).eq('id', session_id).execute()
        elif event_type == 'flow_abandon':
            self.supabase.table('document_request_sessions').update({
                'status': 'abandoned',
                'abandoned_at': timestamp.isoformat(),
            }).eq('id', session_id).execute()

        with self._lock:
            self._metrics_cache.pop(flow_id, None)

    def get_flow_metrics(self, flow_id: str) -> Optional[Dict[str, Any]]:
        """Funnel metrics for one flow, or None when it has no events"""
        now = time.time()
        with self._lock:
            cached = self._metrics_cache.get(flow_id)
            if cached and now - cached[1] < CACHE_TTL:
                return cached[0]

        resp = (
            self.supabase.table('flow_performance_events')
            .select('*')
            .eq('flow_id', flow_id)
            .order('timestamp')
            .execute()
        )
        events = resp.data or []
        if not events:
            return None

        metrics = self._compute_metrics(flow_id, events)
        with self._lock:
            self._metrics_cache[flow_id] = (metrics, now)
        return metrics

    def _compute_metrics(self, flow_id: str, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        sessions = {e['session_id'] for e in events}
        sessions_by_step = defaultdict(set)
        step_times = defaultdict(list)
        dropoffs = defaultdict(set)

        for event in events:
            sessions_by_step[event['step_id']].add(event['session_id'])
            if event.get('time_spent'):
                step_times[event['step_id']].append(event['time_spent'])
            if event['event_type'] == 'flow_abandon':
                dropoffs[event['step_id']].add(event['session_id'])

        completed = list(dict.fromkeys(e['session_id'] for e in events if e['event_type'] == 'flow_complete'))
        completion_rate = (len(completed) / len(sessions)) * 100

        dropoff_points = sorted(
            (
                {
                    'step_id': step_id,
                    'dropoff_count': len(abandoned),
                    'dropoff_rate': (len(abandoned) / (len(sessions_by_step[step_id]) or 1)) * 100,
                }
                for step_id, abandoned in dropoffs.items()
            ),
            key=lambda point: point['dropoff_rate'],
            reverse=True,
        )

        time_by_step = [
            {'step_id': step_id, 'step_name': step_id, 'average_time_spent': _mean(times)}
            for step_id, times in step_times.items()
        ]

        steps_to_complete = [
            sum(1 for e in events if e['session_id'] == session_id and e['event_type'] == 'step_complete')
            for session_id in completed
        ]

        durations = []
        for session_id in completed:
            session_events = [e for e in events if e['session_id'] == session_id]
            start = _parse_time(session_events[0].get('timestamp'))
            end = next(
                (_parse_time(e.get('timestamp')) for e in session_events if e['event_type'] == 'flow_complete'),
                None,
            )
            if start and end and end > start:
                durations.append((end - start).total_seconds() * 1000)

        return {
            'flow_id': flow_id,
            'template_id': events[0].get('template_id') or '',
            'total_sessions': len(sessions),
            'completed_sessions': len(completed),
            'abandoned_sessions': len(sessions) - len(completed),
            'average_steps_to_complete': _mean(steps_to_complete),
            'average_time_to_complete': _mean(durations),
            'completion_rate': completion_rate,
            'dropoff_points': dropoff_points,
            'time_by_step': time_by_step,
            'last_updated': datetime.now(timezone.utc).isoformat(),
        }

    def _flow_ids(self, template_id: Optional[str] = None) -> List[str]:
        query = self.supabase.table('flow_performance_events').select('flow_id, template_id')
        if template_id:
            query = query.eq('template_id', template_id)
        resp = query.execute()
        seen = []
        for row in resp.data or []:
            if row.get('flow_id') and row['flow_id'] not in seen:
                seen.append(row['flow_id'])
        return seen

    def get_template_performance_summary(self, template_id: str) -> Dict[str, Any]:
        flow_ids = self._flow_ids(template_id)
        metrics = [m for m in (self.get_flow_metrics(flow_id) for flow_id in flow_ids) if m]

        return {
            'total_flows': len(flow_ids),
            'total_sessions': sum(m['total_sessions'] for m in metrics),
            'average_completion_rate': _mean([m['completion_rate'] for m in metrics]),
            'top_performing_flows': [m['flow_id'] for m in metrics if m['completion_rate'] > 80],
            'problem_flows': [m['flow_id'] for m in metrics if m['completion_rate'] < 50],
        }

    def get_performance_dashboard(self) -> Dict[str, Any]:
        """System-wide view with a 7-day session trend"""
        now = datetime.now(timezone.utc)
        today = now.date()
        week_start = today - timedelta(days=6)

        sessions_resp = (
            self.supabase.table('document_request_sessions')
            .select('id, status, created_at')
            .gte('created_at', week_start.isoformat())
            .execute()
        )
        sessions_by_day = defaultdict(list)
        for session in sessions_resp.data or []:
            created = _parse_time(session.get('created_at'))
            if created:
                sessions_by_day[created.date()].append(session)

        metrics = [m for m in (self.get_flow_metrics(flow_id) for flow_id in self._flow_ids()) if m]
        flows_with_issues = [
            m['flow_id'] for m in metrics
            if m['completion_rate'] < 50 or m['abandoned_sessions'] > m['total_sessions'] * 0.3
        ]

        trends = []
        for offset in range(6, -1, -1):
            day = today - timedelta(days=offset)
            day_sessions = sessions_by_day.get(day, [])
            completed = sum(1 for s in day_sessions if s.get('status') == 'completed')
            trends.append({
                'date': day.isoformat(),
                'sessions': len(day_sessions),
                'completion_rate': (completed / len(day_sessions)) * 100 if day_sessions else 0,
            })

        return {
            'total_active_flows': len(metrics),
            'total_sessions_today': len(sessions_by_day.get(today, [])),
            'average_completion_rate': _mean([m['completion_rate'] for m in metrics]),
            'flows_with_issues': flows_with_issues,
            'recent_trends': trends,
        }

    def check_and_send_alerts(self) -> List[Dict[str, Any]]:
        """Log alerts for low completion rates and return them"""
        dashboard = self.get_performance_dashboard()
        alerts = []

        if dashboard['total_active_flows'] and dashboard['average_completion_rate'] < CRITICAL_COMPLETION_RATE:
            alerts.append({
                'type': 'critical',
                'message': f"System-wide completion rate dropped to {dashboard['average_completion_rate']:.1f}%",
                'flows': dashboard['flows_with_issues'],
            })

        for flow_id in dashboard['flows_with_issues']:
            metrics = self.get_flow_metrics(flow_id)
            if metrics and metrics['completion_rate'] < WARNING_COMPLETION_RATE:
                alerts.append({
                    'type': 'warning',
                    'message': f"Flow {flow_id} has very low completion rate: {metrics['completion_rate']:.1f}%",
                    'flow_id': flow_id,
                    'dropoff_point': metrics['dropoff_points'][0]['step_id'] if metrics['dropoff_points'] else None,
                })

        for alert in alerts:
            logger.error(f"[FLOW ALERT - {alert['type'].upper()}] {alert['message']}")

        return alerts


# Create a singleton instance
flow_performance_service = FlowPerformanceService()
