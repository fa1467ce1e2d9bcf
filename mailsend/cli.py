# A simple mail tool: compose a message (with optional attachments) and send it
# over SMTP with opportunistic STARTTLS and optional PLAIN authentication.

import logging
import sys
from email.utils import formatdate, make_msgid

import click
from dotenv import find_dotenv, load_dotenv
from tabulate import tabulate

from .config import DEFAULT_PORT, DEFAULT_TIMEOUT, SmtpSettings, read_body, split_addrs
from .errors import InputError, MailError, SerializationError
from .message import Message
from .smtp import SendResult, reply_text, send_mail


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_message(from_addr, recipients, subject, body, attachments) -> Message:
    msg = Message(to=recipients, sender=from_addr, subject=subject, body=body)
    msg.headers.set('Date', formatdate(localtime=True))
    msg.headers.set('Message-ID', make_msgid())
    for path in attachments:
        msg.add_attachment(path)
    return msg


def write_output(msg: Message, output: str) -> int:
    try:
        sink = click.open_file(output, 'wb')
    except OSError as exc:
        raise SerializationError(f"cannot open '{output}': {exc.strerror or exc}") from exc
    with sink:
        return msg.write_to(sink)


def format_recipients(result: SendResult) -> str:
    rows = [[addr, 'accepted', ''] for addr in result.accepted]
    rows += [[addr, 'refused', reply_text(code, reply)] for addr, (code, reply) in result.refused.items()]
    return tabulate(rows, headers=['Recipient', 'Status', 'Reply'], tablefmt='simple')


@click.command()
@click.option('-s', '--subject', default='', help='Subject of the email')
@click.option('-h', '--host', envvar='MAILSEND_HOST', help='SMTP server hostname')
@click.option('-p', '--port', default=DEFAULT_PORT, type=int, envvar='MAILSEND_PORT',
              show_default=True, help='SMTP server port')
@click.option('-f', '--from', 'from_addr', required=True, help='From email address')
@click.option('-t', '--to', 'to_addr', required=True, help='Comma delimited list of recipients')
@click.option('-m', '--msg', 'message', default='-', show_default=True,
              help="Message to send. If message is '-' (dash) it is read from stdin")
@click.option('-a', '--attach', 'attachments', multiple=True,
              help='File to attach (repeatable). Sent raw, so bare LF bytes become CRLF')
@click.option('--ssl', is_flag=True, help='Use SSL connection from the first byte (SMTPS)')
@click.option('--require-tls', is_flag=True, help='Fail unless the server offers STARTTLS')
@click.option('--insecure', is_flag=True, help='Do not verify the server TLS certificate')
@click.option('-u', '--username', default='', envvar='MAILSEND_USER',
              help='SMTP username for authentication')
@click.option('-pw', '--password', default='', envvar='MAILSEND_PASSWORD',
              help='SMTP password for authentication')
@click.option('--timeout', default=DEFAULT_TIMEOUT, type=float, show_default=True,
              help='Deadline in seconds for the whole SMTP transaction')
@click.option('--partial', is_flag=True,
              help='Deliver to the accepted recipients even if some are refused')
@click.option('-o', '--output', type=click.Path(dir_okay=False, allow_dash=True),
              help="Write the message to FILE instead of sending it ('-' for stdout)")
@click.option('-v', '--verbose', is_flag=True, help='Show protocol details')
def main(subject, host, port, from_addr, to_addr, message, attachments, ssl, require_tls,
         insecure, username, password, timeout, partial, output, verbose):
    """Send a single email, optionally with attachments, over SMTP.

    The body is taken from --msg, or read from stdin when --msg is '-'.
    """
    configure_logging(verbose)

    try:
        recipients = split_addrs(to_addr)
        if not recipients:
            raise InputError("Must supply at least one recipient")

        settings = None
        if not output:
            if not host:
                raise InputError("Must supply a host")
            settings = SmtpSettings(
                host=host,
                port=port,
                username=username,
                password=password,
                timeout=timeout,
                implicit_tls=ssl,
                require_tls=require_tls,
                insecure=insecure,
                allow_partial=partial,
                debug=verbose,
            )

        body = read_body(message, click.get_binary_stream('stdin'))
        msg = build_message(from_addr, recipients, subject, body, attachments)

        if output:
            written = write_output(msg, output)
            click.echo(f"Wrote {written} bytes to {output}", err=True)
            return

        result = send_mail(settings, from_addr, recipients, msg.as_bytes())
    except MailError as e:
        click.secho(f"Error: {e}", fg='red', err=True)
        sys.exit(e.exit_code)

    if result.refused or verbose:
        click.echo(format_recipients(result), err=True)
    click.secho(f"Email sent successfully to {', '.join(result.accepted)}", fg='green')


def run():
    """Console entry point: load a .env file, then parse the command line."""
    load_dotenv(find_dotenv(usecwd=True))
    main()


if __name__ == '__main__':
    run()
