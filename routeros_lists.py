#!/usr/bin/env python3
"""
RouterOS List Generator v1.0

Builds MikroTik RouterOS scripts from the GFW domain list and the CN country
IP list.

Features:
- Include/exclude domain lists merged through gfwlist2dnsmasq
- DNS forward rules for every GFW domain
- CN address lists with configurable timeouts
- Concurrent downloads with fixed retry
"""

import os
import re
import sys
import time
import base64
import binascii
import logging
import argparse
import signal
import tempfile
import subprocess
from typing import Callable, Dict, Iterable, List, Optional, Any
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor, as_completed

import requests
from tqdm import tqdm

__version__ = "1.0"

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

GFWLIST2DNSMASQ_SH = "gfwlist2dnsmasq.sh"
INCLUDE_LIST_TXT = "include_list.txt"
EXCLUDE_LIST_TXT = "exclude_list.txt"
GFWLIST = "gfwlist.txt"
GFWLIST_V7_RSC = "gfwlist_v7.rsc"
GFWLIST_CONF = "03-gfwlist.conf"
CN_RSC = "CN.rsc"
CN_IN_MEM_RSC = "CN_mem.rsc"
OUTPUT_GFWLIST_AUTOPROXY = "gfwlist_autoproxy.txt"

CN_URL = "http://www.iwik.org/ipcountry/mikrotik/CN"
GFWLIST_URL = "https://raw.githubusercontent.com/gfwlist/gfwlist/master/gfwlist.txt"

LIST_NAME = "gfw_list"
CN_LIST_NAME = "CN"
DNS_SERVER = "$dnsserver"
CN_MEM_TIMEOUT = "248d"
CN_TIMEOUT = "0"

DEFAULT_TIMEOUT = 30
MAX_RETRIES = 3
RETRY_DELAY = 2
MIN_DOMAINS = 1
MIN_CN_ENTRIES = 1

USER_AGENT = f"RouterOS List Generator/{__version__}"
CONSOLE_FORMAT = "[%(levelname)s] %(message)s"
FILE_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

# Last address= token on a line, as `sed 's/.*address=\([0-9./]\+\).*/'` picks it
ADDRESS_PATTERN = re.compile(r'.*address=([0-9./]+)')
# A collection entry of an already rendered address-list script
RENDERED_ADDRESS_PATTERN = re.compile(r'^\s*"([0-9./]+)";\s*$')

DOMAIN_RSC_HEADER = (
    ':global dnsserver\n'
    '/ip dns static remove [/ip dns static find forward-to={dns_server} ]\n'
    '/ip dns static\n'
    ':local domainList {{\n'
)
DOMAIN_RSC_TRAILER = (
    '}}\n'
    ':foreach domain in=$domainList do={{\n'
    '    /ip dns static add forward-to={dns_server} type=FWD '
    'address-list={list_name} match-subdomain=yes name=$domain\n'
    '}}\n'
    '/ip dns cache flush\n'
)

IP_RSC_HEADER = (
    '/log info "Loading {list_name} ipv4 address list"\n'
    '/ip firewall address-list remove [/ip firewall address-list find list={list_name}]\n'
    '/ip firewall address-list\n'
    ':local ipList {{\n'
)
IP_RSC_TRAILER = (
    '}}\n'
    ':foreach ip in=$ipList do={{\n'
    '    /ip firewall address-list add address=$ip list={list_name} timeout={timeout}\n'
    '}}\n'
)

IP_LIST_USAGE = "Usage: generate_cn_ip_list <input file> <output file> <timeout>"


class GenerationError(Exception):
    """A stage failed and the run cannot continue."""


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class Config:
    """Configuration for a generator run."""
    work_dir: str = "."
    converter: str = GFWLIST2DNSMASQ_SH
    include_list: str = INCLUDE_LIST_TXT
    exclude_list: str = EXCLUDE_LIST_TXT
    gfwlist: str = GFWLIST
    gfwlist_rsc: str = GFWLIST_V7_RSC
    gfwlist_conf: str = GFWLIST_CONF
    cn_rsc: str = CN_RSC
    cn_mem_rsc: str = CN_IN_MEM_RSC
    autoproxy: str = OUTPUT_GFWLIST_AUTOPROXY
    cn_url: str = CN_URL
    gfwlist_url: str = GFWLIST_URL
    list_name: str = LIST_NAME
    cn_list_name: str = CN_LIST_NAME
    dns_server: str = DNS_SERVER
    cn_mem_timeout: str = CN_MEM_TIMEOUT
    cn_timeout: str = CN_TIMEOUT
    timeout: int = DEFAULT_TIMEOUT
    retries: int = MAX_RETRIES
    retry_delay: float = RETRY_DELAY
    min_domains: int = MIN_DOMAINS
    min_cn_entries: int = MIN_CN_ENTRIES
    git_restore: bool = True
    keep_autoproxy: bool = False
    log_file: Optional[str] = None
    quiet: bool = False
    verbose: bool = False

    def __post_init__(self):
        self.retries = max(1, self.retries)
        self.retry_delay = max(0, self.retry_delay)
        if self.timeout <= 0:
            self.timeout = DEFAULT_TIMEOUT

    def path(self, name: str) -> str:
        """Resolve a file name against the working directory."""
        return os.path.join(self.work_dir, name)


def configure_logging(verbose: bool = False, quiet: bool = False,
                      log_file: Optional[str] = None) -> None:
    """Send INFO to stdout and WARNING+ to stderr, tagged with the level."""
    formatter = logging.Formatter(CONSOLE_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    stderr_handler.setLevel(logging.WARNING)

    handlers: List[logging.Handler] = [stdout_handler, stderr_handler]
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(level=logging.INFO, handlers=handlers)

    if verbose:
        logger.setLevel(logging.DEBUG)
    elif quiet:
        logger.setLevel(logging.ERROR)
    else:
        logger.setLevel(logging.INFO)


# ============================================================================
# SCRATCH FILES
# ============================================================================

@dataclass
class ScratchFiles:
    """Transient paths removed when the run ends, however it ends."""
    paths: List[str] = field(default_factory=list)

    def add(self, path: str) -> str:
        if path not in self.paths:
            self.paths.append(path)
        return path

    def mkstemp(self, suffix: str = "") -> str:
        fd, path = tempfile.mkstemp(suffix=suffix)
        os.close(fd)
        return self.add(path)

    def cleanup(self) -> None:
        for path in self.paths:
            try:
                os.remove(path)
                logger.debug(f"Removed scratch file {path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")
        self.paths.clear()


# ============================================================================
# FILE HELPERS
# ============================================================================

def read_lines(path: str) -> List[str]:
    """Return the stripped, non-blank lines of a text file."""
    with open(path, 'r', encoding='utf-8', errors='surrogateescape') as f:
        return [line.strip() for line in f if line.strip()]


def atomic_write(path: str, text: str) -> None:
    """Write text to a sibling temp file, then rename it over path."""
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', errors='surrogateescape', newline='\n') as f:
            f.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def sort_files(*paths: str) -> None:
    """Deduplicate and byte-order sort each file in place."""
    logger.info("Sorting include and exclude domain lists...")
    for path in paths:
        lines = read_lines(path) if os.path.exists(path) else []
        # str ordering equals byte ordering for UTF-8, i.e. LC_ALL=POSIX sort
        unique = sorted(set(lines))
        atomic_write(path, ''.join(f"{line}\n" for line in unique))
        logger.debug(f"{path}: {len(lines)} lines, {len(unique)} unique")


def validate_list_count(path: str, minimum: int, label: str,
                        counter: Callable[[List[str]], int] = len) -> bool:
    """Check that a list holds at least `minimum` entries, as `counter` counts them."""
    if not os.path.exists(path):
        logger.error(f"{label} not found: {path}")
        return False
    count = counter(read_lines(path))
    if count < minimum:
        logger.error(f"{label} has {count} entries, expected at least {minimum}")
        return False
    logger.info(f"{label}: {count:,} entries")
    return True


def decode_base64_file(source: str, destination: str) -> bool:
    """Decode a base64 payload into UTF-8 text. Failures are logged, not raised."""
    try:
        with open(source, 'rb') as f:
            payload = b''.join(f.read().split())
        text = base64.b64decode(payload, validate=True).decode('utf-8')
        atomic_write(destination, text)
    except (binascii.Error, UnicodeDecodeError, OSError) as e:
        logger.error(f"Failed to decode base64 for {source}: {e}")
        return False
    logger.info(f"Decoded content saved to {destination}")
    return True


# ============================================================================
# HTTP CLIENT
# ============================================================================

class HTTPClient:
    """HTTP client with a fixed-count, fixed-delay retry."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, retries: int = MAX_RETRIES,
                 retry_delay: float = RETRY_DELAY):
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers['User-Agent'] = USER_AGENT
        return session

    def download(self, url: str, output: str) -> None:
        """Fetch url into output once, raising on any failure."""
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        with open(output, 'wb') as f:
            f.write(response.content)

    def download_with_retry(self, url: str, output: str) -> bool:
        """
        Download url to output, trying up to `retries` times.

        Returns:
            True on the first successful transfer, False once attempts run out.
        """
        for attempt in range(1, self.retries + 1):
            try:
                self.download(url, output)
            except (requests.RequestException, OSError) as e:
                logger.debug(f"Attempt {attempt} for {url} failed: {e}")
                logger.info(f"Retry {attempt}/{self.retries} for {url}")
                time.sleep(self.retry_delay)
                continue
            logger.info(f"Downloaded {url} to {output}")
            return True

        logger.error(f"Failed to download {url} after {self.retries} attempts")
        return False


# ============================================================================
# RENDERERS
# ============================================================================

def render_domain_rsc(domains: Iterable[str], dns_server: str = DNS_SERVER,
                      list_name: str = LIST_NAME) -> str:
    """Render the DNS forward-rule script for a list of domains."""
    parts = [DOMAIN_RSC_HEADER.format(dns_server=dns_server)]
    parts.extend(f'    "{domain}";\n' for domain in domains)
    parts.append(DOMAIN_RSC_TRAILER.format(dns_server=dns_server, list_name=list_name))
    return ''.join(parts)


def extract_addresses(lines: Iterable[str]) -> List[str]:
    """Pull the address of every `address=` line or rendered list entry."""
    addresses = []
    for line in lines:
        match = ADDRESS_PATTERN.match(line) or RENDERED_ADDRESS_PATTERN.match(line)
        if match:
            addresses.append(match.group(1))
    return addresses


def count_addresses(lines: Iterable[str]) -> int:
    return len(extract_addresses(lines))


def _render_address_list(addresses: List[str], timeout: str, list_name: str) -> str:
    parts = [IP_RSC_HEADER.format(list_name=list_name)]
    parts.extend(f'    "{address}";\n' for address in addresses)
    parts.append(IP_RSC_TRAILER.format(list_name=list_name, timeout=timeout))
    return ''.join(parts)


def render_ip_rsc(lines: Iterable[str], timeout: str,
                  list_name: str = CN_LIST_NAME) -> str:
    """Render the address-list script; lines without an address are skipped."""
    return _render_address_list(extract_addresses(lines), timeout, list_name)


def create_gfwlist_rsc(input_file: str, output_rsc: str, dns_server: str = DNS_SERVER,
                       list_name: str = LIST_NAME, version: str = "v7") -> int:
    """Write the domain script for input_file. Returns the domain count."""
    logger.info(f"Creating {output_rsc} for version {version}...")
    domains = read_lines(input_file)
    atomic_write(output_rsc, render_domain_rsc(domains, dns_server, list_name))
    return len(domains)


def generate_cn_ip_list(input_file: str, output_file: str, timeout: Optional[str],
                        list_name: str = CN_LIST_NAME) -> int:
    """
    Render an address-list script from input_file into output_file.

    input_file and output_file may be the same path: the result goes to a
    temp file first and is renamed into place. Returns the address count.
    """
    if not input_file or not output_file or timeout is None or str(timeout) == "":
        raise ValueError(IP_LIST_USAGE)

    with open(input_file, 'r', encoding='utf-8', errors='surrogateescape') as f:
        lines = f.read().splitlines()

    addresses = extract_addresses(lines)
    atomic_write(output_file, _render_address_list(addresses, str(timeout), list_name))

    logger.info(f"Conversion complete! The generated file is {output_file}")
    return len(addresses)


# ============================================================================
# EXTERNAL PROCESSES
# ============================================================================

def run_gfwlist2dnsmasq(config: Config) -> None:
    """Run the converter to merge include/exclude lists into the GFW list."""
    converter = config.path(config.converter)
    if not os.path.exists(converter):
        raise FileNotFoundError(f"Converter not found: {converter}")

    logger.info("Running gfwlist2dnsmasq...")
    subprocess.run(
        ["bash", converter,
         "--domain-list",
         "--extra-domain-file", config.path(config.include_list),
         "--exclude-domain-file", config.path(config.exclude_list),
         "--output", config.path(config.gfwlist)],
        check=True
    )


def check_git_status(config: Config) -> bool:
    """
    Restore the tracked dnsmasq conf when it is the only change in the tree.

    Returns True if the file was restored.
    """
    logger.info("Checking git status...")
    try:
        result = subprocess.run(
            ["git", "status", "-s"],
            cwd=config.work_dir, capture_output=True, text=True, check=True
        )
    except (OSError, subprocess.CalledProcessError) as e:
        logger.warning(f"Skipping git status check: {e}")
        return False

    changes = [line for line in result.stdout.splitlines() if line.strip()]
    if len(changes) != 1:
        logger.debug(f"{len(changes)} changed entries, leaving {config.gfwlist_conf} alone")
        return False

    subprocess.run(
        ["git", "checkout", "--", config.gfwlist_conf],
        cwd=config.work_dir, check=True
    )
    logger.info(f"Restored {config.gfwlist_conf}")
    return True


# ============================================================================
# GENERATOR
# ============================================================================

class ListGenerator:
    """Main orchestrator for the list generation pipeline."""

    def __init__(self, config: Config, http_client: Optional[HTTPClient] = None):
        self.config = config
        self.http_client = http_client or HTTPClient(
            timeout=config.timeout,
            retries=config.retries,
            retry_delay=config.retry_delay
        )
        self.scratch = ScratchFiles()
        self.stats: Dict[str, Any] = {
            'domains': 0,
            'cn_entries': 0,
            'downloads_ok': 0,
            'downloads_failed': 0,
            'git_restored': False,
        }

    def fetch_gfwlist(self) -> bool:
        """Download the base64 GFW list and decode it. Never raises."""
        cfg = self.config
        try:
            tmp_base64_file = self.scratch.mkstemp(suffix=".b64")
            if not self.http_client.download_with_retry(cfg.gfwlist_url, tmp_base64_file):
                logger.error("Failed to download gfwlist")
                return False
            return decode_base64_file(tmp_base64_file, cfg.path(cfg.autoproxy))
        except Exception as e:
            logger.error(f"Failed to fetch gfwlist: {e}")
            return False

    def cn_download_path(self) -> str:
        """CN list lands here and replaces CN.rsc only once it validates."""
        return self.scratch.add(self.config.path(self.config.cn_rsc + ".part"))

    def parallel_downloads(self) -> Dict[str, bool]:
        """Run both downloads concurrently and wait for each to finish."""
        cfg = self.config
        logger.info("Starting parallel downloads...")

        if not cfg.keep_autoproxy:
            self.scratch.add(cfg.path(cfg.autoproxy))

        results: Dict[str, bool] = {}
        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = {
                executor.submit(self.http_client.download_with_retry,
                                cfg.cn_url, self.cn_download_path()): 'cn',
                executor.submit(self.fetch_gfwlist): 'gfwlist',
            }
            for future in tqdm(as_completed(futures), total=len(futures),
                               desc="Downloading", disable=cfg.quiet):
                name = futures[future]
                results[name] = future.result()

        self.stats['downloads_ok'] = sum(1 for ok in results.values() if ok)
        self.stats['downloads_failed'] = len(results) - self.stats['downloads_ok']
        return results

    def modify_cn_rsc(self) -> int:
        """Render the in-memory CN list, then rewrite CN.rsc with no timeout."""
        cfg = self.config
        cn_rsc = cfg.path(cfg.cn_rsc)
        cn_mem_rsc = cfg.path(cfg.cn_mem_rsc)

        generate_cn_ip_list(cn_rsc, cn_mem_rsc, cfg.cn_mem_timeout, cfg.cn_list_name)
        count = generate_cn_ip_list(cn_rsc, cn_rsc, cfg.cn_timeout, cfg.cn_list_name)
        logger.info(f"New file created: {cn_mem_rsc}")
        return count

    def run(self) -> Dict[str, Any]:
        """Run every stage in order. Raises on the first fatal failure."""
        cfg = self.config
        start_time = time.time()

        try:
            sort_files(cfg.path(cfg.include_list), cfg.path(cfg.exclude_list))
            run_gfwlist2dnsmasq(cfg)
            if not validate_list_count(cfg.path(cfg.gfwlist), cfg.min_domains, "gfwlist"):
                raise GenerationError(f"{cfg.gfwlist} failed validation")

            self.stats['domains'] = create_gfwlist_rsc(
                cfg.path(cfg.gfwlist), cfg.path(cfg.gfwlist_rsc),
                cfg.dns_server, cfg.list_name
            )

            if cfg.git_restore:
                self.stats['git_restored'] = check_git_status(cfg)

            results = self.parallel_downloads()
            if not results.get('cn'):
                raise GenerationError(f"Failed to download {cfg.cn_url}")
            cn_download = self.cn_download_path()
            if not validate_list_count(cn_download, cfg.min_cn_entries, "CN list",
                                       counter=count_addresses):
                raise GenerationError(f"{cfg.cn_url} failed validation, {cfg.cn_rsc} left as is")
            os.replace(cn_download, cfg.path(cfg.cn_rsc))

            self.stats['cn_entries'] = self.modify_cn_rsc()
        finally:
            self.scratch.cleanup()

        self.stats['elapsed_time'] = f"{time.time() - start_time:.2f} seconds"
        return self.stats


# ============================================================================
# CLI
# ============================================================================

def _terminate(signum, frame):
    raise SystemExit(128 + signum)


def parse_arguments(argv: Optional[List[str]] = None) -> Config:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description=f"RouterOS List Generator v{__version__}",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument("-d", "--work-dir", default=".",
                        help="Directory holding the lists and outputs")
    parser.add_argument("--converter", default=GFWLIST2DNSMASQ_SH,
                        help="gfwlist2dnsmasq script")
    parser.add_argument("--cn-url", default=CN_URL,
                        help="CN address list URL")
    parser.add_argument("--gfwlist-url", default=GFWLIST_URL,
                        help="Base64 GFW list URL")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT,
                        help="HTTP timeout in seconds")
    parser.add_argument("--retries", type=int, default=MAX_RETRIES,
                        help="Download attempts per URL")
    parser.add_argument("--retry-delay", type=float, default=RETRY_DELAY,
                        help="Seconds to wait between attempts")
    parser.add_argument("--min-domains", type=int, default=MIN_DOMAINS,
                        help="Minimum entries in the merged GFW list")
    parser.add_argument("--min-cn-entries", type=int, default=MIN_CN_ENTRIES,
                        help="Minimum entries in the CN list")
    parser.add_argument("--no-git-restore", action="store_true",
                        help="Skip the git status check")
    parser.add_argument("--keep-autoproxy", action="store_true",
                        help="Keep the decoded GFW list")
    parser.add_argument("--log-file", default=None,
                        help="Also log to this file")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Quiet mode")
    parser.add_argument("--version", action="version",
                        version=f"RouterOS List Generator v{__version__}")

    args = parser.parse_args(argv)

    return Config(
        work_dir=args.work_dir,
        converter=args.converter,
        cn_url=args.cn_url,
        gfwlist_url=args.gfwlist_url,
        timeout=args.timeout,
        retries=args.retries,
        retry_delay=args.retry_delay,
        min_domains=args.min_domains,
        min_cn_entries=args.min_cn_entries,
        git_restore=not args.no_git_restore,
        keep_autoproxy=args.keep_autoproxy,
        log_file=args.log_file,
        quiet=args.quiet,
        verbose=args.verbose
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main function."""
    config = parse_arguments(argv)
    configure_logging(config.verbose, config.quiet, config.log_file)
    signal.signal(signal.SIGTERM, _terminate)

    generator = ListGenerator(config)

    try:
        stats = generator.run()

        if not config.quiet:
            print("\n" + "=" * 60)
            print(" " * 25 + "SUMMARY")
            print("=" * 60)
            print(f"GFW domains:        {stats['domains']:,}")
            print(f"CN entries:         {stats['cn_entries']:,}")
            print(f"Downloads:          {stats['downloads_ok']} ok, {stats['downloads_failed']} failed")
            print(f"Conf restored:      {'yes' if stats['git_restored'] else 'no'}")
            print(f"Runtime:            {stats.get('elapsed_time', 'N/A')}")
            print("=" * 60 + "\n")

        return 0

    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 1
    except Exception as e:
        logger.error(f"An error occurred: {e}")
        if config.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
