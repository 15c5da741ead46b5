from wavetalk.cli import main

main(prog_name="wavetalk")
