"""
設定管理モジュール
JSON形式で設定を保存/読み込み（CLI 用。コアの NTPClient は設定ファイルを読まない）
"""
import copy
import json
import logging
import os

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = 'chronontp_config.json'
OUTPUT_FORMATS = ('default', 'json', 'verbose', 'offset')


class Config:
    def __init__(self, config_file=DEFAULT_CONFIG_FILE):
        self.config_file = config_file
        self.settings = self._load_default_settings()
        self.load()

    def _load_default_settings(self):
        """デフォルト設定"""
        return {
            # NTP設定
            'ntp': {
                'server': 'pool.ntp.org',
                'fallback_servers': ['time.google.com'],
                'port': 123,
                'timeout': 5.0,  # 秒
                'interval': 5.0,  # 連続モードの間隔（秒）
            },

            # 出力設定
            'output': {
                'format': 'default',  # 'default', 'json', 'verbose', 'offset'
            },

            # デバッグモード
            'debug': False,
        }

    def load(self):
        """設定をファイルから読み込み"""
        if not self.config_file or not os.path.exists(self.config_file):
            return False
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("設定読み込みエラー: %s (%s)", self.config_file, e)
            return False

        if not isinstance(loaded, dict):
            logger.warning("設定ファイルの形式が不正です: %s", self.config_file)
            return False

        # デフォルト設定にマージ（新しいキーがあっても対応）
        self._merge_settings(self.settings, loaded)
        return True

    def _merge_settings(self, default, loaded):
        """デフォルト設定に読み込んだ設定をマージ（未知のキーは無視）"""
        for key, value in loaded.items():
            if key in default:
                if isinstance(value, dict) and isinstance(default[key], dict):
                    self._merge_settings(default[key], value)
                else:
                    default[key] = value

    def save(self):
        """設定をファイルに保存"""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.settings, f, indent=4, ensure_ascii=False)
            return True
        except OSError as e:
            logger.error("設定保存エラー: %s (%s)", self.config_file, e)
            return False

    def get(self, *keys):
        """設定を取得（ネストされたキーに対応）"""
        value = self.settings
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return None
        return copy.deepcopy(value)

    def set(self, *keys, value):
        """設定を変更（ネストされたキーに対応）"""
        if len(keys) == 0:
            return False

        settings = self.settings
        for key in keys[:-1]:
            if key not in settings:
                settings[key] = {}
            settings = settings[key]

        settings[keys[-1]] = value
        return True

    def reset(self):
        """設定をデフォルトに戻す"""
        self.settings = self._load_default_settings()
        return self.save()

    def client_kwargs(self):
        """NTPClient に渡す引数"""
        defaults = self._load_default_settings()['ntp']
        ntp = self.get('ntp') or {}
        fallback = ntp.get('fallback_servers')
        if fallback is None:
            fallback = defaults['fallback_servers']
        if isinstance(fallback, str):
            fallback = [fallback]
        return {
            'server': ntp.get('server') or defaults['server'],
            'fallback_servers': list(fallback),
            'port': int(ntp.get('port') or defaults['port']),
            'timeout': float(ntp.get('timeout') or defaults['timeout']),
        }
