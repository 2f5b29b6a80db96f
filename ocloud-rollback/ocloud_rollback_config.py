#!/usr/bin/env python3
"""
O-Cloud Rollback Configuration
Values come from environment variables (optionally a .env file), then an
optional YAML file, then command line flags.
"""

import os
from typing import Any, Dict, List, Optional

import yaml

from ocloud_rollback_models import Lineage


def _env_float(name: str, default: Optional[str]) -> Optional[float]:
    val = os.getenv(name, default)
    if val is None or str(val).strip() == '':
        return None
    return float(val)


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


class Config:
    """Configuration class"""
    def __init__(self):
        # Release / lineage identity
        self.namespace = os.getenv('NAMESPACE', 'ocloud')
        self.app_name = os.getenv('APP_NAME', 'ocloud-app')
        self.deployment_name: Optional[str] = os.getenv('DEPLOYMENT_NAME') or None
        self.app_selector: Optional[str] = os.getenv('APP_SELECTOR') or None
        self.service_name: Optional[str] = os.getenv('SERVICE_NAME') or None
        self.max_revisions = int(os.getenv('MAX_REVISIONS', '10'))
        self.helm_bin = os.getenv('HELM_BIN', 'helm')

        # Decision loop
        self.check_interval = float(os.getenv('CHECK_INTERVAL', '30'))
        self.max_attempts = int(os.getenv('MAX_ATTEMPTS', '10'))
        self.monitor_window: Optional[float] = _env_float('MONITOR_WINDOW', None)
        self.rollback_timeout = int(os.getenv('ROLLBACK_TIMEOUT', '600'))

        # Health checks
        self.probe_timeout = float(os.getenv('PROBE_TIMEOUT', '10'))
        self.health_path = os.getenv('HEALTH_PATH', '/health')
        self.health_port = int(os.getenv('HEALTH_PORT', '8080'))
        self.restart_warn_threshold = int(os.getenv('RESTART_WARN_THRESHOLD', '5'))

        # Verification after rollback
        self.verify_attempts = int(os.getenv('VERIFY_ATTEMPTS', '5'))
        self.verify_interval = float(os.getenv('VERIFY_INTERVAL', '10'))
        self.ready_timeout = int(os.getenv('READY_TIMEOUT', '300'))
        self.verify_paths = _env_list('VERIFY_PATHS', '/health,/ready,/status')
        self.verify_service = os.getenv('VERIFY_SERVICE', 'true').strip().lower() in ('true', '1', 'yes')

        # External call bounds
        self.api_timeout = float(os.getenv('API_TIMEOUT', '30'))
        self.resource_retry_count = int(os.getenv('RESOURCE_RETRY_COUNT', '3'))
        self.resource_retry_delay = float(os.getenv('RESOURCE_RETRY_DELAY', '1'))
        self.resource_retry_max_delay = float(os.getenv('RESOURCE_RETRY_MAX_DELAY', '30'))

        # Audit log
        self.audit_db_path = os.getenv('AUDIT_DB_PATH', 'rollback_audit.duckdb')

        # Deployment strategies
        self.canary_replicas = int(os.getenv('CANARY_REPLICAS', '1'))
        self.canary_period = float(os.getenv('CANARY_PERIOD', '60'))

        # Load test
        self.load_test_requests = int(os.getenv('LOAD_TEST_REQUESTS', '1000'))
        self.load_test_concurrency = int(os.getenv('LOAD_TEST_CONCURRENCY', '100'))
        self.load_test_path = os.getenv('LOAD_TEST_PATH', '/status')

        # Logging
        self.log_file: Optional[str] = os.getenv('LOG_FILE', 'ocloud_rollback.log') or None
        self.log_level = os.getenv('LOG_LEVEL', 'INFO')

        # Kubernetes client
        self.k8s_verify_ssl: Optional[bool] = self._get_verify_ssl_setting()
        self.kubeconfig_path: Optional[str] = os.getenv('KUBECONFIG')
        self.k8s_ca_cert_path: Optional[str] = os.getenv('K8S_CA_CERT')

    def _get_verify_ssl_setting(self) -> Optional[bool]:
        """Get SSL verification setting from environment"""
        for env_var in ['K8S_VERIFY', 'OCP_API_VERIFY', 'VERIFY_SSL']:
            val = os.getenv(env_var)
            if val is not None:
                val_lower = val.strip().lower()
                if val_lower in ('true', '1', 'yes'):
                    return True
                if val_lower in ('false', '0', 'no'):
                    return False
        return None  # Not set, will auto-detect

    def apply(self, overrides: Dict[str, Any]) -> "Config":
        """Apply known keys from a mapping; unknown keys raise ValueError"""
        for key, value in overrides.items():
            attr = key.replace('-', '_').lower()
            if not hasattr(self, attr):
                raise ValueError(f"Unknown configuration key: {key}")
            current = getattr(self, attr)
            if value is not None and isinstance(current, bool):
                value = value if isinstance(value, bool) else str(value).lower() in ('true', '1', 'yes')
            elif value is not None and isinstance(current, int):
                value = int(value)
            elif value is not None and isinstance(current, float):
                value = float(value)
            elif isinstance(value, str) and isinstance(current, list):
                value = [item.strip() for item in value.split(',') if item.strip()]
            setattr(self, attr, value)
        return self

    def load_yaml(self, path: str) -> "Config":
        """Apply overrides from a YAML mapping file"""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        return self.apply(data)

    def lineage(self) -> Lineage:
        return Lineage(
            release=self.app_name,
            namespace=self.namespace,
            deployment=self.deployment_name,
            selector=self.app_selector,
            service=self.service_name,
        )
