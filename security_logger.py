"""
Security Event Logging Service
Structured JSON audit trail for authentication, authorization and money movement
"""
import json
import logging
import logging.handlers
import os
from typing import Optional, Dict, Any

from flask import g, has_request_context, request


class SecurityLogger:
    """
    Audit logger writing one JSON document per event to rotating log files
    """

    def __init__(self, app=None):
        self.app = app
        self.logger = None
        self.log_dir = None

        if app:
            self.init_app(app)

    def init_app(self, app):
        """Initialize security logger with Flask app"""
        self.app = app
        self._setup_structured_logging()

    def _setup_structured_logging(self):
        """Configure structured logging with JSON format and file rotation"""
        default_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'logs')
        self.log_dir = self.app.config.get('LOG_DIR') or default_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.logger = logging.getLogger('security')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}'
        )

        # Rotating file handler for security events (50MB max, keep 10 backups)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(self.log_dir, 'security.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(json_formatter)
        self.logger.addHandler(file_handler)

        # Separate file for blocked and failed events
        critical_handler = logging.handlers.RotatingFileHandler(
            os.path.join(self.log_dir, 'security_critical.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        critical_handler.setLevel(logging.WARNING)
        critical_handler.setFormatter(json_formatter)
        self.logger.addHandler(critical_handler)

        if self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        """Extract context from current request, if there is one"""
        context = {
            'ip_address': None,
            'user_agent': None,
            'request_method': None,
            'request_path': None,
            'user_id': None
        }
        if not has_request_context():
            return context

        context['ip_address'] = request.headers.get('X-Forwarded-For', request.remote_addr)
        if context['ip_address'] and ',' in context['ip_address']:
            context['ip_address'] = context['ip_address'].split(',')[0].strip()
        context['user_agent'] = request.headers.get('User-Agent', '')
        context['request_method'] = request.method
        context['request_path'] = request.path
        context['user_id'] = g.get('user_id')
        return context

    def log_event(
        self,
        event_category: str,
        event_type: str,
        action: str,
        severity: str = 'medium',
        status: str = 'success',
        message: str = '',
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict] = None,
        user_id: Optional[int] = None
    ):
        """
        Log a security event to the structured audit log

        Args:
            event_category: Category (authentication, authorization, financial, system)
            event_type: Specific event type (token_issued, permission_check, order_settlement...)
            action: Human-readable action description
            severity: Event severity (low, medium, high, critical)
            status: Event status (success, failure, blocked)
            message: Additional message
            resource_type: Type of resource affected (order, delivery_file, transaction...)
            resource_id: ID of affected resource
            details: Additional context as dictionary
            user_id: Override user ID (if not on the request)
        """
        if self.logger is None:
            return

        try:
            context = self._get_request_context()
            if user_id:
                context['user_id'] = user_id

            log_data = {
                'event_category': event_category,
                'event_type': event_type,
                'severity': severity,
                'user_id': context['user_id'],
                'ip_address': context['ip_address'],
                'request_method': context['request_method'],
                'request_path': context['request_path'],
                'action': action,
                'resource_type': resource_type,
                'resource_id': str(resource_id) if resource_id is not None else None,
                'status': status,
                'message': message,
                'details': details
            }

            log_level = {
                'low': logging.INFO,
                'medium': logging.INFO,
                'high': logging.WARNING,
                'critical': logging.CRITICAL
            }.get(severity, logging.INFO)

            self.logger.log(log_level, json.dumps(log_data, default=str))

        except Exception as e:
            # Fallback to app logger if audit logging fails
            if self.app:
                self.app.logger.error(f"Security logging failed: {e}")
                self.app.logger.error(f"Event: {event_category}/{event_type} - {action}")

    def log_authentication(self, event_type: str, status: str, message: str = '', **kwargs):
        """Log authentication event"""
        severity = 'high' if status == 'failure' else 'low'
        self.log_event(
            event_category='authentication',
            event_type=event_type,
            action=f"User authentication: {event_type}",
            severity=severity,
            status=status,
            message=message,
            **kwargs
        )

    def log_authorization(self, resource_type: str, resource_id, action: str, status: str, **kwargs):
        """Log authorization event"""
        severity = 'high' if status == 'blocked' else 'medium'
        self.log_event(
            event_category='authorization',
            event_type='permission_check',
            action=action,
            severity=severity,
            status=status,
            resource_type=resource_type,
            resource_id=resource_id,
            **kwargs
        )

    def log_financial(self, event_type: str, action: str, amount: float, resource_type: str, resource_id, **kwargs):
        """Log financial transaction"""
        self.log_event(
            event_category='financial',
            event_type=event_type,
            action=action,
            severity='medium',
            resource_type=resource_type,
            resource_id=resource_id,
            details={'amount': amount},
            **kwargs
        )


# Global instance (will be initialized in app.py)
security_logger = None


def init_security_logger(app):
    """Initialize global security logger instance"""
    global security_logger
    security_logger = SecurityLogger(app)
    app.extensions['security_logger'] = security_logger
    return security_logger
