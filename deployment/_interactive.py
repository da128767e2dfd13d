# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import getpass
import string
from typing import Collection
from typing import Optional


def ask(prompt: str, secret: bool) -> str:
    try:
        if secret:
            return getpass.getpass(f"{prompt}: ")
        return input(f"{prompt}: ")
    except EOFError:
        print()
        return ''


def confirm(prompt: str) -> bool:
    """Only a literal "yes" confirms; destroying things needs more than Enter."""
    try:
        answer = input(f"{prompt} (type 'yes' to confirm): ")
    except EOFError:
        print()
        return False
    return answer.strip().lower() == 'yes'


def get_user_choice(choice_name: str, allowed_values: Collection[str]) -> Optional[str]:
    options = []
    shortcuts = {}
    for option in allowed_values:
        for c in option:
            if c.casefold() in shortcuts:
                continue
            if c not in string.ascii_letters:
                continue
            shortcuts[c.casefold()] = option
            options.append(option.replace(c, f'[{c}]', 1))
            break
        else:
            options.append(option)
    options = ', '.join(options)
    while True:
        print(f"{choice_name} ({options} or Ctrl+D to exit): ", end='')
        try:
            choice = input().strip()
        except EOFError:
            print()
            return None
        choice = shortcuts.get(choice.casefold(), choice)
        if choice in allowed_values:
            return choice
        print("Invalid input, please enter one of the options")
