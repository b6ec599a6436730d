# -*- coding: UTF-8 -*-
import logging
import os
from typing import Optional
import sys

class Logger:
    def __init__(self, debug: bool = False):
        self.sym_error = '❌'
        self.sym_success = '✅'
        self.sym_result = '➡️'
        self.sym_tip = '💡'
        self.sym_warning = '⚠️'
        self.sym_important = '❗'
        self.sym_save = '💾'
        self.sym_step = '🔁'

        self._logger = logging.getLogger('adversarial_ppl')
        self._file_handler: Optional[logging.FileHandler] = None

        self._setup(debug)

    def _setup(self, debug: bool):
        stdout_handler = logging.StreamHandler(sys.stdout)
        handlers = [stdout_handler]
        logging.basicConfig(handlers=handlers, format='\n%(asctime)s - %(levelname)s  - %(message)s', datefmt='%d-%b-%y %H:%M:%S', level=logging.DEBUG if debug else logging.INFO)

    def add_file(self, path_to_log: str):
        """Mirrors every following message into `path_to_log`."""
        os.makedirs(os.path.dirname(path_to_log) or '.', exist_ok=True)

        # Only one run log at a time
        if self._file_handler is not None:
            self._logger.removeHandler(self._file_handler)
            self._file_handler.close()

        self._file_handler = logging.FileHandler(filename=path_to_log, encoding='utf-8')
        self._file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s  - %(message)s'))
        self._logger.addHandler(self._file_handler)

    def _compose(self, symbol: str, message, next_step: Optional[str] = None, tip: Optional[str] = None):
        log_str = f"{symbol} {message} \n" if symbol else f"{message} \n"

        if next_step:
            log_str += f"\n\t {self.sym_result} {next_step}"

        if tip:
            log_str += f"\n\t {self.sym_tip} {tip}"

        return log_str

    def info(self, message, next_step: Optional[str] = None):
        self._logger.info(self._compose('', message, next_step))

    def debug(self, message):
        self._logger.debug(self._compose('', message))

    def step(self, message):
        self._logger.info(self._compose(self.sym_step, message))

    def error(self, message, next_step: Optional[str] = None, tip: Optional[str] = None):
        self._logger.error(self._compose(self.sym_error, message, next_step, tip))

    def success(self, message, next_step: Optional[str] = None):
        self._logger.info(self._compose(self.sym_success, message, next_step))

    def warning(self, message, next_step: Optional[str] = None, tip: Optional[str] = None):
        self._logger.warning(self._compose(self.sym_warning, message, next_step, tip))

    def important(self, message):
        self._logger.info(self._compose(self.sym_important, message))

    def save(self, message):
        self._logger.info(self._compose(self.sym_save, message))

logger = Logger()
