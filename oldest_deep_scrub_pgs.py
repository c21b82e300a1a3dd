#!/usr/bin/env python3
"""
Filename: oldest_deep_scrub_pgs.py

Usage help:
  ./oldest_deep_scrub_pgs.py --help

Purpose:
Show the PGs whose last deep scrub is longest ago, along with their primary
  OSD and acting set, then print copy/paste commands to deep-scrub those PGs
  and raise 'osd_max_scrubs' on every OSD involved.

The PG list is read from 'ceph pg ls -f json', falling back to
  'ceph pg dump_json' on older releases.  A saved capture of either can be
  supplied with '-f' instead ( '-' reads stdin ).

Nothing is ever executed against the cluster, the commands are only printed.

Assumptions:
 * The 'ceph' command runs normally with the proper keyring present
 * If extra parameters are needed for 'ceph' to execute, add them to
   the CEPH_ARGS environment variable BEFORE executing the script.

Example:
   # export CEPH_ARGS='--cluster prod'
   # ./oldest_deep_scrub_pgs.py -n 10 --scrubs 3

"""

import argparse,datetime,json,os,re,shlex,subprocess,sys
from collections import namedtuple

CEPH_COMMANDS = [
    ['ceph', 'pg', 'ls', '-f', 'json'],
    ['ceph', 'pg', 'dump_json'],
]

# Ceph reports a never-scrubbed PG with this stamp
UNSET_STAMP = '0.000000'
NEVER = 'never'

PGRow = namedtuple('PGRow', ['pgid', 'instant', 'primary', 'acting', 'last'])
ParsedStamp = namedtuple('ParsedStamp', ['instant', 'error'])
Config = namedtuple('Config', ['count', 'scrubs', 'emit_cmds', 'debug', 'source_file', 'ceph_args'], defaults=(5, 4, True, False, None, ()))


class ScrubReportError(Exception):
    """Base class for every fatal error of this report."""


class SourceUnavailableError(ScrubReportError):
    """Neither ceph invocation ( nor the supplied file ) produced any output."""


class MalformedSourceError(ScrubReportError):
    """The PG listing is not valid JSON."""


class NoPGsFoundError(ScrubReportError):
    """The JSON document holds no PG records in any known layout."""


class NoEvaluatablePGsError(ScrubReportError):
    """PG records were found but none of them could be ranked."""


def log_output(message):
    print('{0:%Y-%m-%d %H:%M:%S} {1:s}'.format(datetime.datetime.now(),message), file=sys.stderr, flush=True)


# -----------------------------------------------------------------------------
# Timestamps
# -----------------------------------------------------------------------------

_OFFSET_NO_COLON = re.compile(r'([+\-]\d{2})(\d{2})$')
_HAS_DESIGNATOR = re.compile(r'(?:Z|[+\-]\d{2}:\d{2})$')
_FRACTION = re.compile(r'(T\d{2}:\d{2}:\d{2})\.\d+(?=Z$|[+\-]\d{2}:\d{2}$)')
_ISO_STAMP = re.compile(r'^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:Z|[+\-]\d{2}:\d{2})$')


def normalize_stamp(s):
    """
    normalize_stamp(s)
     - s == a ceph stamp, e.g. '2025-07-14 03:12:45.123456' or
            '2025-07-15T08:02:17.503+0000'

    Returns the ISO-8601 form of 's': 'T' date/time separator, '+HH:MM'
    offset, and 'Z' appended when no zone is given ( ceph stamps without
    one are UTC ).
    """
    norm = s.replace(' ', 'T', 1)
    norm = _OFFSET_NO_COLON.sub(r'\1:\2', norm)
    if not _HAS_DESIGNATOR.search(norm):
        norm += 'Z'
    return norm


def parse_stamp(s):
    """
    parse_stamp(s)
     - s == a ceph stamp string, or None

    Returns a ParsedStamp.  'instant' is whole seconds since the epoch
    ( fraction truncated ), 0 for an unset stamp, or None together with
    an 'error' reason when 's' could not be parsed.  Never raises.
    """
    if s is None or s == '' or s == UNSET_STAMP:
        return ParsedStamp(0, None)
    if not isinstance(s, str):
        return ParsedStamp(None, 'not a string: {!r}'.format(s))

    norm = _FRACTION.sub(r'\1', normalize_stamp(s))
    # strptime would also take single-digit fields
    if not _ISO_STAMP.match(norm):
        return ParsedStamp(None, 'not an ISO-8601 stamp: {!r}'.format(s))
    try:
        dt = datetime.datetime.strptime(norm, '%Y-%m-%dT%H:%M:%S%z')
        return ParsedStamp(int(dt.timestamp()), None)
    except (ValueError, OverflowError) as e:
        return ParsedStamp(None, str(e))


def stamp_to_epoch(s):
    # unparseable stamps rank with the never-scrubbed ones
    parsed = parse_stamp(s)
    return parsed.instant if parsed.instant is not None else 0


# -----------------------------------------------------------------------------
# PG records
# -----------------------------------------------------------------------------

def _is_list(value):
    return isinstance(value, list)


def _dict_list(doc, key):
    return isinstance(doc, dict) and _is_list(doc.get(key))


# Layouts seen across ceph releases, most specific first
EXTRACTORS = [
    ('bare_list',        _is_list,
                         lambda doc: doc),
    ('pg_stats',         lambda doc: _dict_list(doc, 'pg_stats'),
                         lambda doc: doc['pg_stats']),
    ('pg_map.pg_stats',  lambda doc: isinstance(doc, dict) and _dict_list(doc.get('pg_map'), 'pg_stats'),
                         lambda doc: doc['pg_map']['pg_stats']),
    ('entries',          lambda doc: _dict_list(doc, 'entries'),
                         lambda doc: doc['entries']),
]


def find_pg_array(doc):
    """
    find_pg_array(doc)
     - doc == parsed JSON from 'ceph pg ls' / 'ceph pg dump'

    Returns ( layout name, list of PG records ) for the first layout in
    EXTRACTORS that matches, or ( None, [] ).
    """
    for name, matches, access in EXTRACTORS:
        if matches(doc):
            return name, access(doc)
    return None, []


def extract_pg_array(doc):
    return find_pg_array(doc)[1]


def _first_osd(pg, key):
    osds = pg.get(key)
    if _is_list(osds) and osds:
        return osds[0]
    return None


def primary_osd_of(pg):
    for value in (pg.get('acting_primary'), pg.get('up_primary'), _first_osd(pg, 'acting'), _first_osd(pg, 'up')):
        if value is not None:
            return value
    return None


def acting_set_of(pg):
    for key in ('acting', 'up'):
        if _is_list(pg.get(key)) and pg[key]:
            return tuple(pg[key])
    return ()


def project(pg):
    last = pg.get('last_deep_scrub_stamp')
    if last is None:
        last = NEVER
    return PGRow(
        pgid    = pg.get('pgid'),
        instant = stamp_to_epoch('' if last == NEVER else last),
        primary = primary_osd_of(pg),
        acting  = acting_set_of(pg),
        last    = last,
    )


def build_rows(doc):
    pgs = extract_pg_array(doc)
    if not pgs:
        raise NoPGsFoundError('No PGs found')
    return [ project(pg) for pg in pgs ]


# -----------------------------------------------------------------------------
# Ranking
# -----------------------------------------------------------------------------

def _rank_key(row):
    # 0 ( never / unknown ) stays ahead of pre-epoch stamps
    return (row.instant != 0, row.instant, str(row.last or ''), str(row.pgid or ''))


def rank(rows, count):
    """
    rank(rows, count)
     - rows  == list of PGRow
     - count == how many of the oldest rows to keep

    Oldest deep scrub first, ties broken by the stamp text and then the
    pgid.  'count' larger than the row count returns every row.
    """
    if not rows:
        raise NoEvaluatablePGsError('No evaluatable PGs')
    return sorted(rows, key=_rank_key)[:min(count, len(rows))]


def report(doc, config):
    return rank(build_rows(doc), config.count)


# -----------------------------------------------------------------------------
# Output
# -----------------------------------------------------------------------------

def format_acting(acting):
    return ','.join(str(osd) for osd in acting)


def render_table(top):
    lines = [
        'Top {0:d} PGs by oldest deep scrub:'.format(len(top)),
        '',
        '{0:<12s} {1:<10s} {2:<20s} {3:s}'.format('PGID', 'Primary', 'Acting', 'Last Deep Scrub'),
        '-' * 70,
    ]
    for r in top:
        primary = 'unknown' if r.primary is None else str(r.primary)
        lines.append('{0:<12s} osd.{1:<8s} {2:<20s} {3:s}'.format(str(r.pgid or ''), primary, format_acting(r.acting), str(r.last)))
    return lines


def remediation_osds(top):
    """
    Every OSD in the acting sets of 'top' ( or the primary, for a PG
    without an acting set ), first-seen order, no repeats.
    """
    seen = []
    for r in top:
        if r.acting:
            sources = [ str(osd) for osd in r.acting ]
        elif r.primary is not None:
            sources = [ str(r.primary) ]
        else:
            sources = []
        for source in sources:
            for osd in re.split(r'[,\s]+', source):
                if osd and osd not in seen:
                    seen.append(osd)
    return seen


def remediation_commands(top, scrubs):
    pgids = ' '.join(str(r.pgid) for r in top if r.pgid is not None)
    osds = ' '.join(remediation_osds(top))
    lines = [ '', '# copy/paste:' ]
    if pgids:
        lines.append('for i in {0:s} ; do ceph pg deep-scrub $i ; done'.format(pgids))
    if osds:
        lines.append('for i in {0:s} ; do ceph config set osd.$i osd_max_scrubs {1:d} ; done'.format(osds, scrubs))
    return lines


# -----------------------------------------------------------------------------
# Input
# -----------------------------------------------------------------------------

def read_ceph_json(ceph_args=()):
    """
    read_ceph_json(ceph_args)
     - ceph_args == extra arguments for every 'ceph' call ( from CEPH_ARGS )

    Tries each command in CEPH_COMMANDS, returning the stdout of the first
    one that exits 0.
    """
    for command in CEPH_COMMANDS:
        command = command + list(ceph_args)
        try:
            result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
        except OSError:
            continue
        if result.returncode == 0:
            return result.stdout
    raise SourceUnavailableError('Unable to read Ceph JSON')


def read_file(filename):
    if filename == '-':
        return sys.stdin.buffer.read()
    try:
        with open(filename, 'rb') as f:
            return f.read()
    except OSError as e:
        raise SourceUnavailableError('Failed to open {}.  Does it exist?'.format(filename)) from e


def load_json(text):
    try:
        return json.loads(text)
    except ValueError as e:
        raise MalformedSourceError('JSON parse error: {}'.format(e)) from e


# -----------------------------------------------------------------------------
# Main
# -----------------------------------------------------------------------------

def positive_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError('{} is not an integer'.format(value)) from None
    if number < 1:
        raise argparse.ArgumentTypeError('{} is not a positive integer'.format(value))
    return number


def parse_args(argv=None, environ=None):
    if environ is None:
        environ = os.environ
    parser = argparse.ArgumentParser(
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description='Show the PGs whose last deep scrub is longest ago and emit copy/paste commands.',
        epilog="NOTE:\n  If additional arguments are required for ceph to execute,\n  please set them in CEPH_ARGS environment variable BEFORE running this\n  script.")
    parser.add_argument("-n",               default = 5, type=positive_int, metavar="NUM", dest="count", help="Show the NUM oldest PGs ( default: 5 )")
    parser.add_argument("--scrubs",         default = 4, type=positive_int, metavar="NUM", help="Set osd_max_scrubs to NUM for involved OSDs ( default: 4 )")
    parser.add_argument("--no-cmds",        action = 'store_false', dest="emit_cmds",      help="Do not print shell command snippets")
    parser.add_argument("--debug",          action = 'store_true',                         help="Print parsed epoch timestamps per PG")
    parser.add_argument("-f", "--file",     default = None, dest="source_file",            help="Read a saved 'ceph pg ls -f json' output instead of querying ceph ( '-' for stdin )")
    args = parser.parse_args(argv)

    return Config(
        count       = args.count,
        scrubs      = args.scrubs,
        emit_cmds   = args.emit_cmds,
        debug       = args.debug,
        source_file = args.source_file,
        ceph_args   = tuple(shlex.split(environ.get('CEPH_ARGS', ''))),
    )


def run(config):
    if config.source_file is not None:
        if config.debug:
            log_output("Reading PG list from {}...".format(config.source_file))
        text = read_file(config.source_file)
    else:
        if config.debug:
            log_output("Fetching PG list from ceph...")
        text = read_ceph_json(config.ceph_args)

    doc = load_json(text)
    if config.debug:
        log_output("PG layout: {}".format(find_pg_array(doc)[0]))
    top = report(doc, config)

    for line in render_table(top):
        print(line)
    if config.debug:
        for r in top:
            parsed = parse_stamp('' if r.last == NEVER else r.last)
            note = ' (unparsed: {})'.format(parsed.error) if parsed.error else ''
            print('[debug] {0} ts={1:d}{2:s}'.format(r.pgid or '', r.instant, note), file=sys.stderr)

    if config.emit_cmds:
        for line in remediation_commands(top, config.scrubs):
            print(line)


def main(argv=None):
    config = parse_args(argv)
    try:
        run(config)
    except ScrubReportError as e:
        log_output(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
